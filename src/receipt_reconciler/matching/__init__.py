"""
Matching engine.

Scores candidate documents against transactions and ranks them:
- MatchScorer: pure multi-signal scoring with decay and penalty terms
- MatchRanker: ranking above a suggestion floor and connected-amount view
- currency: offline monthly FX conversion
"""

from .currency import ConversionResult, convert_amount
from .ranker import ConnectedAmountSummary, MatchRanker
from .scorer import MatchResult, MatchScore, MatchScorer, score_document

__all__ = [
    "ConnectedAmountSummary",
    "ConversionResult",
    "MatchRanker",
    "MatchResult",
    "MatchScore",
    "MatchScorer",
    "convert_amount",
    "score_document",
]
