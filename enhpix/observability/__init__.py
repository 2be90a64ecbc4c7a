"""
Observability helpers for Enhpix.

Structured logging shared by the ledger, orchestrator and CLI.
"""
