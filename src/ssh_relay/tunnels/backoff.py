"""Retry policy deciding how long a worker waits before reconnecting."""

from pydantic import BaseModel, ConfigDict, Field

from ..common.settings import BackoffStrategy


class RetryPolicy(BaseModel):
    """Deterministic backoff schedule bounded by a tunnel's ``max_retries``."""

    model_config = ConfigDict(frozen=True)

    strategy: BackoffStrategy = Field(default=BackoffStrategy.FIXED)
    cap_ms: int = Field(default=60_000, ge=0, description="Exponential delay ceiling")

    def delay_ms(self, retry_interval_ms: int, retry_count: int) -> int:
        """Delay before reconnect attempt number ``retry_count`` (1-based).

        Args:
            retry_interval_ms: Base interval from the tunnel config
            retry_count: Attempt about to be scheduled

        Returns:
            Delay in milliseconds
        """
        if retry_count < 1:
            raise ValueError("retry_count starts at 1")

        if self.strategy == BackoffStrategy.FIXED:
            return retry_interval_ms

        # Cap the exponent before shifting so huge retry counts stay cheap
        exponent = min(retry_count - 1, 32)
        return min(retry_interval_ms * (2**exponent), max(self.cap_ms, retry_interval_ms))

    @staticmethod
    def exhausted(retry_count: int, max_retries: int) -> bool:
        """True when another reconnect would exceed ``max_retries``."""
        return retry_count >= max_retries
