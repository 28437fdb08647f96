"""
salesrecon — Sales activity / pipeline deal reconciliation engine.

Detects orphan activities, orphan deals and duplicate records, scores
candidate pairs, and applies audited, reversible link / create / merge
actions.
"""

__version__ = "0.1.0"
