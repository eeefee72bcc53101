"""Decision Oracle: batch analysis of a chunk of assets by the AI model.

The model answers with ``{"decisions": [...], "cycleSummary": "..."}``.
Unusable entries are dropped one by one; an unparseable reply is an
OracleError for the whole chunk.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any, Optional, Protocol

import structlog

from vaultdealer.shell.contract import Action, CycleDecision, OracleReply, decision_from_dict
from vaultdealer.shell.errors import OracleError

if TYPE_CHECKING:
    from vaultdealer.dealer.ai_client import AIClient

log = structlog.get_logger()

SUMMARY_MAX_CHARS = 350
ACTION_SYNONYMS = {"LONG": "BUY", "SHORT": "SELL", "WAIT": "HOLD"}
# When the model answers twice for one coin, the stronger intent wins
ACTION_PRIORITY = {Action.CLOSE: 3, Action.BUY: 2, Action.SELL: 2, Action.HOLD: 1}

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

SYSTEM_PROMPT = """You are an autonomous crypto perpetuals trading engine.
Analyze each asset in the batch and output one TRADING DECISION per coin.

Respond with ONLY valid JSON of this shape:
{
  "decisions": [
    {
      "coin": "BTC",
      "action": "BUY" | "SELL" | "HOLD" | "CLOSE",
      "confidence": 0.0 to 1.0,
      "reason": "Start with LONG:, SHORT:, CLOSE: or WAIT:, then the position status, then the explanation",
      "suggestedLeverage": number,
      "sizeUSDC": number,
      "orderType": "limit" | "market",
      "price": number (optional),
      "stopLoss": number (optional, BUY/SELL only),
      "takeProfit": number (optional, BUY/SELL only)
    }
  ],
  "cycleSummary": "one or two sentences on the overall market read"
}

Rules:
1. One decision per coin provided.
2. Position state is given in each coin's openPosition block. Never assume a position that is not listed there.
   If openPosition.hasPosition is false, say "No position." first. If true, say "In <side> at $<entryPrice>, PnL: $<unrealizedPnl>" first.
3. Do not suggest BUY when portfolio.settings.maxOpenPositions is reached unless the coin already has a position.
4. suggestedLeverage must not exceed portfolio.settings.maxLeverage.
5. Account for trading fees in portfolio.userFees before recommending a trade.
6. Only CLOSE a coin that has an open position."""


class DecisionOracle(Protocol):
    async def analyze_batch(
        self, contexts: list[dict], risk_settings: dict, strategy: str, extra: Optional[dict] = None
    ) -> OracleReply: ...


def extract_json(text: str) -> Any:
    """Parse JSON from a model reply: fenced block, bare object/array, or surrounded by prose."""
    candidates = [m.group(1) for m in _FENCE.finditer(text)] + [text]
    for candidate in candidates:
        candidate = candidate.strip()
        try:
            return json.loads(candidate)
        except ValueError:
            pass
        for open_ch, close_ch in (("{", "}"), ("[", "]")):
            start, end = candidate.find(open_ch), candidate.rfind(close_ch)
            if start != -1 and end > start:
                try:
                    return json.loads(candidate[start:end + 1])
                except ValueError:
                    continue
    raise OracleError(f"No JSON found in oracle reply: {text[:120]!r}")


def parse_reply(payload: Any, coins: Optional[set[str]] = None) -> OracleReply:
    """Normalize, validate and de-duplicate decisions from a parsed reply."""
    summary = None
    if isinstance(payload, dict) and "decisions" in payload:
        raw = payload.get("decisions") or []
        if isinstance(payload.get("cycleSummary"), str):
            summary = payload["cycleSummary"][:SUMMARY_MAX_CHARS]
    elif isinstance(payload, list):
        raw = payload
    elif isinstance(payload, dict):
        raw = [payload]
    else:
        raise OracleError(f"Unexpected oracle payload: {type(payload).__name__}")
    if not isinstance(raw, list):
        raise OracleError("Oracle 'decisions' is not a list")

    by_coin: dict[str, CycleDecision] = {}
    for entry in raw:
        if not isinstance(entry, dict):
            log.warning("oracle.entry_dropped", reason="not an object")
            continue
        entry = dict(entry)
        action = str(entry.get("action", "")).upper()
        entry["action"] = ACTION_SYNONYMS.get(action, action)
        try:
            decision = decision_from_dict(entry)
        except (ValueError, TypeError) as e:
            log.warning("oracle.entry_dropped", coin=entry.get("coin"), reason=str(e))
            continue
        if coins is not None and decision.coin not in coins:
            log.warning("oracle.unrequested_coin", coin=decision.coin)
            continue

        existing = by_coin.get(decision.coin)
        if existing is None or (
            ACTION_PRIORITY[decision.action], decision.confidence
        ) > (ACTION_PRIORITY[existing.action], existing.confidence):
            by_coin[decision.coin] = decision

    return OracleReply(decisions=list(by_coin.values()), summary=summary)


class AIDecisionOracle:
    def __init__(self, ai: AIClient) -> None:
        self._ai = ai

    async def analyze_batch(
        self, contexts: list[dict], risk_settings: dict, strategy: str, extra: Optional[dict] = None
    ) -> OracleReply:
        batch = {"coins": contexts, "riskSettings": risk_settings, **(extra or {})}
        prompt = (
            f"[USER STRATEGY]\n{strategy or 'Balanced: trade only clear, high-conviction setups.'}\n\n"
            f"[BATCH MARKET DATA]\n{json.dumps(batch, default=str)}\n\n"
            'Analyze all assets in the batch. Return a JSON object with a "decisions" array.'
        )
        text = await self._ai.ask(prompt, system=SYSTEM_PROMPT, purpose="dealer_batch")
        if not text.strip():
            raise OracleError("Empty oracle reply")
        coins = {c["coin"] for c in contexts if "coin" in c}
        return parse_reply(extract_json(text), coins or None)
