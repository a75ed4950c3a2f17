# src/liquidator/notifications/telegram.py
from __future__ import annotations

import os
import logging
from dataclasses import dataclass
from typing import Optional, List

import requests

from src.liquidator.core.models.candidate import SubmissionResult
from src.liquidator.core.models.enums import Outcome

log = logging.getLogger("liquidator.notifications.telegram")

TELEGRAM_MAX_LEN = 3900  # below the 4096 hard limit


# -------------------------
# models
# -------------------------
@dataclass(frozen=True)
class TelegramTarget:
    name: str
    bot_token: str
    chat_id: str


def _env(name: str) -> str:
    v = os.getenv(name)
    return v.strip() if isinstance(v, str) else ""


# -------------------------
# message split
# -------------------------
def split_long_message(text: str, max_len: int = TELEGRAM_MAX_LEN) -> List[str]:
    """Split on blank lines, then on lines, so every part fits the limit."""
    s = (text or "").strip()
    if not s:
        return []
    if len(s) <= max_len:
        return [s]

    parts: List[str] = []
    buf = ""
    for chunk in s.split("\n\n"):
        cand = (buf + "\n\n" + chunk).strip() if buf else chunk.strip()
        if len(cand) <= max_len:
            buf = cand
            continue

        if buf:
            parts.append(buf)
            buf = ""

        if len(chunk) <= max_len:
            buf = chunk.strip()
            continue

        line_buf = ""
        for line in chunk.splitlines():
            cand2 = (line_buf + "\n" + line).strip() if line_buf else line
            if len(cand2) <= max_len:
                line_buf = cand2
            else:
                if line_buf:
                    parts.append(line_buf)
                line_buf = line[:max_len]
        if line_buf:
            parts.append(line_buf)

    if buf:
        parts.append(buf)
    return [p for p in parts if p.strip()]


# -------------------------
# targets
# -------------------------
def resolve_targets_from_env(*, max_extra: int = 5) -> List[TelegramTarget]:
    """
    TELEGRAM_BOT_TOKEN + TELEGRAM_CHAT_ID, plus optional extra chats
    TELEGRAM_CHAT_ID_1..N (same bot unless TELEGRAM_BOT_TOKEN_i is set).
    """
    targets: List[TelegramTarget] = []

    token = _env("TELEGRAM_BOT_TOKEN")
    chat = _env("TELEGRAM_CHAT_ID")
    if token and chat:
        targets.append(TelegramTarget(name="primary", bot_token=token, chat_id=chat))

    for i in range(1, max(1, int(max_extra)) + 1):
        extra_chat = _env(f"TELEGRAM_CHAT_ID_{i}")
        if not extra_chat:
            continue
        extra_token = _env(f"TELEGRAM_BOT_TOKEN_{i}") or token
        if not extra_token:
            continue
        targets.append(TelegramTarget(name=f"extra_{i}", bot_token=extra_token, chat_id=extra_chat))

    return targets


# -------------------------
# send
# -------------------------
def send_telegram_message(text: str, *, target: TelegramTarget, disable_preview: bool = True) -> bool:
    text = (text or "").strip()
    if not text:
        return False

    url = f"https://api.telegram.org/bot{target.bot_token}/sendMessage"
    ok = True
    for part in split_long_message(text):
        payload = {
            "chat_id": target.chat_id,
            "text": part,
            "disable_web_page_preview": bool(disable_preview),
        }
        try:
            r = requests.post(url, json=payload, timeout=15)
        except requests.RequestException as e:
            log.error("Telegram send to %s failed: %s", target.name, e)
            return False
        if r.status_code != 200:
            log.error("Telegram send to %s failed: %s %s", target.name, r.status_code, r.text[:300])
            ok = False
    return ok


def broadcast_telegram_message(text: str, *, targets: List[TelegramTarget]) -> int:
    """Number of targets that accepted the message."""
    ok = 0
    for t in targets:
        if send_telegram_message(text, target=t):
            ok += 1
    return ok


# -------------------------
# outcome formatting
# -------------------------
NOTIFY_OUTCOMES = frozenset({Outcome.CONFIRMED, Outcome.ABANDONED})


def format_outcome_message(result: SubmissionResult, *, liquidator: Optional[str] = None) -> str:
    head = "✅ LIQUIDATED" if result.outcome == Outcome.CONFIRMED else "⚠️ LIQUIDATION ABANDONED"
    lines = [head, f"account: {result.account_key}"]
    if result.margin_ratio is not None:
        lines.append(f"margin ratio: {result.margin_ratio / 100:.2f}%")
    if result.slot is not None:
        lines.append(f"slot: {result.slot}")
    lines.append(f"attempts: {result.attempts}")
    if result.signature:
        lines.append(f"tx: https://explorer.solana.com/tx/{result.signature}")
    if result.error:
        lines.append(f"error: {result.error}")
    if liquidator:
        lines.append(f"liquidator: {liquidator}")
    return "\n".join(lines)
