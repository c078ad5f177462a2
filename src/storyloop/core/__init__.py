"""Orchestrator core: routing, CLI selection, process harness, verification and the run loop."""
