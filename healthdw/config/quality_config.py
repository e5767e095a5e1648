"""Integrity gate configuration"""
import os

# Issue kinds that only warn instead of blocking a load run
INTEGRITY_WARNING_KINDS = [
    k.strip() for k in os.getenv("INTEGRITY_WARNING_KINDS", "unreferenced_dimension").split(",") if k.strip()
]

# Run the row-level audit (grain, key and reference checks) before every load
INTEGRITY_CHECK_ROWS = os.getenv("INTEGRITY_CHECK_ROWS", "true").lower() == "true"
