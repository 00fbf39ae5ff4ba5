"""Email pattern learning, verification and confidence fusion."""

from .feedback import FEEDBACK_IMPACTS, FeedbackService
from .patterns import (
    EmailSample,
    EmailVariation,
    LearnedPattern,
    PatternStore,
    adjust_confidence_for_catch_all,
    detect_pattern,
    find_similar_domains,
    generate_email,
    generate_generic_patterns,
    learn_pattern,
)
from .scoring import ConfidenceScorer, EmailScoreInput, apply_hard_bounce_penalty, explain_score
from .verifier import EmailVerifier, SmtpOutcome, VerificationResult

__all__ = [
    "FEEDBACK_IMPACTS",
    "ConfidenceScorer",
    "EmailSample",
    "EmailScoreInput",
    "EmailVariation",
    "EmailVerifier",
    "FeedbackService",
    "LearnedPattern",
    "PatternStore",
    "SmtpOutcome",
    "VerificationResult",
    "adjust_confidence_for_catch_all",
    "apply_hard_bounce_penalty",
    "detect_pattern",
    "explain_score",
    "find_similar_domains",
    "generate_email",
    "generate_generic_patterns",
    "learn_pattern",
]
