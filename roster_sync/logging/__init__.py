"""Console logging and telemetry sinks."""
