"""Token budget guard for outbound generation requests."""

from typing import Optional

from src.config import settings
from src.domain.schema import UsageCounter
from src.utils.logger import get_logger

logger = get_logger(__name__)


class UsageLimitExceeded(Exception):
    """Raised when a dispatch would exceed the configured token limit."""

    def __init__(self, limit: int, total: int):
        self.limit = limit
        self.total = total
        super().__init__(
            f"Rate limit of {limit} tokens exceeded ({total} used). "
            "Reset usage or raise the limit to continue."
        )


class UsageGuard:
    """Budget check in front of every dispatch that produces model output.

    Counters only grow through ``record`` and only shrink through ``reset``.
    A limit of 0 disables the check.
    """

    def __init__(self, limit: Optional[int] = None, warning_threshold: Optional[int] = None):
        """Initialize guard.

        Args:
            limit: Maximum total tokens (defaults to settings.rate_limit).
            warning_threshold: Percentage of the limit that triggers a warning
                (defaults to settings.rate_limit_warning_threshold).
        """
        self.limit = settings.rate_limit if limit is None else limit
        self.warning_threshold = (
            settings.rate_limit_warning_threshold if warning_threshold is None else warning_threshold
        )
        self.usage = UsageCounter()
        self._warned = False

    def check_and_reserve(self, estimated_tokens: int = 0) -> None:
        """Allow or reject a dispatch.

        Args:
            estimated_tokens: Tokens the request is expected to use. Only
                logged; the decision uses the tokens already consumed.

        Raises:
            UsageLimitExceeded: If the limit is positive and already reached.
        """
        if self.limit > 0 and self.usage.total_tokens >= self.limit:
            logger.warning(
                "usage_guard.rejected",
                limit=self.limit,
                total_tokens=self.usage.total_tokens,
                estimated_tokens=estimated_tokens,
            )
            raise UsageLimitExceeded(self.limit, self.usage.total_tokens)

    def try_reserve(self, estimated_tokens: int = 0) -> bool:
        """Non-raising variant of check_and_reserve."""
        try:
            self.check_and_reserve(estimated_tokens)
        except UsageLimitExceeded:
            return False
        return True

    def record(self, usage: UsageCounter) -> UsageCounter:
        """Add provider-reported usage to the counters."""
        self.usage = self.usage.plus(usage)
        if not self._warned and self.status() == "warning":
            self._warned = True
            logger.warning(
                "usage_guard.warning_threshold_crossed",
                percent=round(self.percent_used(), 1),
                threshold=self.warning_threshold,
            )
        return self.usage

    def reset(self) -> None:
        """Zero all counters."""
        self.usage = UsageCounter()
        self._warned = False
        logger.info("usage_guard.reset")

    def percent_used(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.usage.total_tokens / self.limit * 100

    def status(self) -> str:
        """Budget state: "ok", "warning" or "exceeded"."""
        if self.limit <= 0:
            return "ok"
        percent = self.percent_used()
        if percent >= 100:
            return "exceeded"
        if percent >= self.warning_threshold:
            return "warning"
        return "ok"
