"""Sync services: normalizer, header registry, audit gate, upsert engine, orchestrator."""
