from .status_evaluator import (
    ChannelEvaluation,
    StatusEvaluation,
    evaluate_channel,
    evaluate_status,
    most_severe,
)

__all__ = [
    "ChannelEvaluation",
    "StatusEvaluation",
    "evaluate_channel",
    "evaluate_status",
    "most_severe",
]
