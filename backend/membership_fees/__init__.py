"""
Membership fee engine: tariff resolution, income brackets, legacy reductions
and versioned decision trees, with immutable payment snapshots.
"""

__version__ = "0.1.0"
