"""Secure assessment sandbox.

Provisions isolated container environments for untrusted source code and
runs resilient, declarative analysis workflows inside them.

Usage:
    from secure_assessment import AssessmentSystem

    system = AssessmentSystem()
    env = await system.create_environment(security_config, analysis_config)
"""

from secure_assessment.exceptions import AssessmentError, ErrorCode, Severity
from secure_assessment.system import AssessmentSystem

__all__ = [
    "AssessmentError",
    "AssessmentSystem",
    "ErrorCode",
    "Severity",
]
