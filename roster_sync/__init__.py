"""Device roster sync: spreadsheet -> document store with schema drift tracking."""

__version__ = "0.1.0"
