"""AI Client: Anthropic Messages API with retries and a daily token budget.

Token usage is persisted to ``token_usage`` so the budget survives restarts.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import anthropic
import structlog

from vaultdealer.shell.config import AIConfig
from vaultdealer.shell.database import Database
from vaultdealer.shell.errors import OracleError

log = structlog.get_logger()

# Cost per million tokens (approximate)
MODEL_COSTS = {
    "claude-sonnet-4-5-20250929": {"input": 3.0, "output": 15.0},
    "claude-haiku-4-5-20251001": {"input": 1.0, "output": 5.0},
}

TRANSIENT_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)
MAX_RETRIES = 3


class AIClient:
    def __init__(self, config: AIConfig, db: Database, client: Any = None) -> None:
        self._config = config
        self._db = db
        self._client = client
        self._daily_tokens_used: int = 0
        self._budget_day = datetime.now(timezone.utc).date()

    async def initialize(self) -> None:
        """Create the SDK client (unless injected) and seed today's token count from DB."""
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self._config.anthropic_api_key, timeout=120.0)
            log.info("ai.initialized", model=self._config.model)

        row = await self._db.fetchone(
            "SELECT COALESCE(SUM(input_tokens + output_tokens), 0) as total FROM token_usage WHERE created_at >= date('now')"
        )
        if row and row["total"]:
            self._daily_tokens_used = row["total"]
            log.info("ai.tokens_seeded", used_today=self._daily_tokens_used)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self._config.daily_token_limit - self._daily_tokens_used)

    def _roll_budget(self) -> None:
        today = datetime.now(timezone.utc).date()
        if today != self._budget_day:
            self._budget_day = today
            self._daily_tokens_used = 0

    async def ask(self, prompt: str, system: str = "", purpose: str = "") -> str:
        """Send one user message and return the response text. Raises OracleError."""
        if self._client is None:
            raise RuntimeError("AI client not initialized, call initialize() first")

        self._roll_budget()
        if self._daily_tokens_used >= self._config.daily_token_limit:
            log.warning("ai.daily_limit_reached", used=self._daily_tokens_used, limit=self._config.daily_token_limit)
            raise OracleError("Daily token limit reached")

        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self._config.temperature,
        }
        if system:
            kwargs["system"] = system

        for attempt in range(MAX_RETRIES):
            try:
                response = await self._client.messages.create(**kwargs)
                break
            except TRANSIENT_ERRORS as e:
                if attempt == MAX_RETRIES - 1:
                    raise OracleError(f"AI call failed after {MAX_RETRIES} attempts: {e}") from e
                wait = 2 ** attempt  # 1s, 2s
                log.warning("ai.retry", attempt=attempt + 1, error=str(e), wait=wait)
                await asyncio.sleep(wait)
            except anthropic.APIError as e:
                raise OracleError(f"AI call rejected: {e}") from e

        text = "".join(block.text for block in response.content if hasattr(block, "text"))

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        self._daily_tokens_used += input_tokens + output_tokens

        costs = MODEL_COSTS.get(self._config.model, {"input": 3.0, "output": 15.0})
        cost = (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000

        await self._db.execute(
            """INSERT INTO token_usage (model, input_tokens, output_tokens, cost_usd, purpose)
               VALUES (?, ?, ?, ?, ?)""",
            (self._config.model, input_tokens, output_tokens, cost, purpose),
        )
        await self._db.commit()

        log.info("ai.response", model=self._config.model, input_tokens=input_tokens,
                 output_tokens=output_tokens, cost=f"${cost:.4f}", purpose=purpose)
        return text

    async def get_daily_usage(self) -> dict:
        row = await self._db.fetchone(
            """SELECT COALESCE(SUM(input_tokens), 0) as input_total, COALESCE(SUM(output_tokens), 0) as output_total,
                      COALESCE(SUM(cost_usd), 0) as cost_total, COUNT(*) as calls
               FROM token_usage WHERE created_at >= date('now')"""
        )
        return {
            "input": row["input_total"],
            "output": row["output_total"],
            "cost": row["cost_total"],
            "calls": row["calls"],
            "daily_limit": self._config.daily_token_limit,
            "used": self._daily_tokens_used,
        }
