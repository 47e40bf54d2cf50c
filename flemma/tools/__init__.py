"""Tool registry, approval, result ledger and execution."""
