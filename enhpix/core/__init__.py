"""
Core modules for Enhpix.

This package contains the plan catalog, pricing, the usage ledger,
cost recording and enhancement orchestration.
"""
