"""
Prometheus metrics configuration
"""
from prometheus_client import Counter, Gauge, Histogram

# ============================================================================
# Fee calculation metrics
# ============================================================================

fee_simulations_total = Counter(
    'fee_simulations_total',
    'Total number of membership fee simulations',
    ['outcome']  # outcome: 'success', 'not_applicable', 'invalid'
)

fee_commits_total = Counter(
    'fee_commits_total',
    'Total number of membership fee commits',
    ['status']  # status: 'success', 'conflict', 'failed'
)

fee_calculation_duration_seconds = Histogram(
    'fee_calculation_duration_seconds',
    'Duration of a full fee calculation in seconds',
    ['operation'],  # operation: 'simulate', 'commit'
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)
)

# ============================================================================
# Decision tree metrics
# ============================================================================

decision_tree_locks_total = Counter(
    'decision_tree_locks_total',
    'Number of decision trees transitioned from unlocked to locked'
)

decision_tree_versions_total = Counter(
    'decision_tree_versions_total',
    'Number of decision tree versions created',
    ['reason']  # reason: 'create', 'update', 'duplicate'
)

matcher_errors_total = Counter(
    'matcher_errors_total',
    'Malformed decision branches and nodes skipped during evaluation',
    ['condition_kind']
)

# ============================================================================
# Cache metrics
# ============================================================================

income_bracket_cache_entries = Gauge(
    'income_bracket_cache_entries',
    'Number of income bracket configurations currently cached'
)
