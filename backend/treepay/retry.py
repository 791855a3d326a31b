import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

logger = logging.getLogger("tree_generation")


@dataclass
class GenerationResult:
    generated: list[str] = field(default_factory=list)
    failed: int = 0

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict:
        return {"generated": self.generated, "failed": self.failed, "success": self.success}


class TreeGenerationRetryService:
    """
    Mint tree codes one by one, retrying each with exponential backoff.

    A code that still fails after ``max_retries`` attempts is counted and
    logged for manual recovery; the rest of the batch carries on.
    """

    def __init__(self, max_retries: int = 3, base_delay: float = 0.1, sleep=asyncio.sleep):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    async def generate_tree_codes_with_retry(
            self,
            generate_fn: Callable[[], Awaitable[str]],
            quantity: int,
            order_id: str,
            correlation_id: str,
    ) -> GenerationResult:
        result = GenerationResult()

        for index in range(1, quantity + 1):
            try:
                tree_code = await self._retry_with_backoff(generate_fn, index, quantity)
            except Exception as e:
                result.failed += 1
                logger.error(
                    "[TREE_GEN:%s] Failed to generate tree %s/%s for order %s: %s",
                    correlation_id, index, quantity, order_id, e,
                )
                self._log_failed_generation(order_id, index, quantity, correlation_id, str(e))
                continue

            result.generated.append(tree_code)
            logger.info("[TREE_GEN:%s] Generated %s/%s: %s", correlation_id, index, quantity, tree_code)

        if not result.success:
            logger.warning(
                "[TREE_GEN:%s] Partial success: %s/%s trees generated, %s failed",
                correlation_id, len(result.generated), quantity, result.failed,
            )
        return result

    async def _retry_with_backoff(self, fn, index: int, total: int) -> str:
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return await fn()
            except Exception as e:
                last_error = e
                if attempt < self.max_retries:
                    delay = self.base_delay * 2 ** (attempt - 1)
                    logger.warning(
                        "Tree generation attempt %s/%s failed for %s/%s, retrying in %.3fs...",
                        attempt, self.max_retries, index, total, delay,
                    )
                    await self._sleep(delay)
        raise last_error or RuntimeError("Max retries exceeded")

    @staticmethod
    def _log_failed_generation(order_id, tree_index, total_quantity, correlation_id, error_message):
        logger.error(json.dumps({
            "event": "TREE_GENERATION_FAILED",
            "orderId": order_id,
            "treeIndex": tree_index,
            "totalQuantity": total_quantity,
            "correlationId": correlation_id,
            "errorMessage": error_message,
            "alertLevel": "P1",
            "recoveryAction": "MANUAL_TREE_GENERATION_REQUIRED",
        }))
