"""Health assessment: per-kind evaluators, grace windows and the aggregate rollup."""

from kubesync.health.assessor import HealthAssessor, aggregate_health
from kubesync.health.evaluators import HealthEvaluator, evaluate, evaluator_for

__all__ = ["HealthAssessor", "HealthEvaluator", "aggregate_health", "evaluate", "evaluator_for"]
