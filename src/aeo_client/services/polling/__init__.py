from .policy import RetryAction, RetryDecision, RetryPolicy
from .poller import Poller, PollOptions, StatusSnapshot

__all__ = ["Poller", "PollOptions", "StatusSnapshot", "RetryAction", "RetryDecision", "RetryPolicy"]
