"""
Admission domain for the Gateway Service.

Holds the per-request admission context, the stage contract and the pipeline
that composes identity, access and rate stages.
"""

from .context import AccessDecision, AdmissionContext, Outcome, Principal, Role, ServiceIdentity, Stage
from .pipeline import AdmissionPipeline

__all__ = [
    "AccessDecision",
    "AdmissionContext",
    "AdmissionPipeline",
    "Outcome",
    "Principal",
    "Role",
    "ServiceIdentity",
    "Stage",
]
