from .safety_rules import SAFETY_RULES, SafetyRule, apply_filter, filter_unsafe, mark_unsafe

__all__ = ["SAFETY_RULES", "SafetyRule", "apply_filter", "filter_unsafe", "mark_unsafe"]
