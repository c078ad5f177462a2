"""
Acceptance criteria verification.

Public API:
- AcceptanceVerifier: runs criteria test commands and updates the PRD
- VerificationResult: outcome for one story
- CriterionResult: outcome for one criterion
"""

from storyloop.core.verify.service import (
    AcceptanceVerifier,
    CriterionResult,
    VerificationResult,
    utc_timestamp,
)

__all__ = ["AcceptanceVerifier", "CriterionResult", "VerificationResult", "utc_timestamp"]
