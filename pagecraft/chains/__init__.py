# Chains package
from .refinement_chain import PipelineStep, RefinementChain, TurnResult

__all__ = ["PipelineStep", "RefinementChain", "TurnResult"]
