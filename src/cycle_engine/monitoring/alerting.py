"""
Alert Manager for Telegram notifications.

Sends operator alerts with deduplication to prevent spam. With no
credentials configured, alerts are logged and dropped.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class AlertRecord:
    """Tracks when an alert was last sent."""

    key: str
    last_sent: float  # Unix timestamp
    count: int = 1


class AlertManager:
    """
    Manages operator alerts with deduplication.

    Usage:
        manager = AlertManager(telegram_bot_token="...", telegram_chat_id="...")

        manager.send_alert(
            title="Selection failed",
            message="Only 9 fixtures qualified",
            dedup_key="selection_42",
        )

        manager.alert_result_conflict("18535517", (2, 1), (1, 2))
        manager.alert_health_issue("chain_rpc", "UNHEALTHY", "No new block in 5 min")
    """

    DEFAULT_COOLDOWN = 300  # 5 minutes
    TELEGRAM_URL = "https://api.telegram.org/bot{token}/sendMessage"

    def __init__(
        self,
        telegram_bot_token: Optional[str] = None,
        telegram_chat_id: Optional[str] = None,
        default_cooldown: int = DEFAULT_COOLDOWN,
        timeout: float = 10.0,
        _telegram_api: Optional[Any] = None,  # For testing
    ) -> None:
        self._bot_token = telegram_bot_token
        self._chat_id = telegram_chat_id
        self._default_cooldown = default_cooldown
        self._timeout = timeout
        self._telegram_api = _telegram_api

        self._sent_alerts: Dict[str, AlertRecord] = {}

    @property
    def enabled(self) -> bool:
        return self._telegram_api is not None or bool(self._bot_token and self._chat_id)

    def send_alert(
        self,
        title: str,
        message: str,
        dedup_key: Optional[str] = None,
        cooldown_seconds: Optional[int] = None,
        priority: str = "normal",
    ) -> bool:
        """
        Send an alert via Telegram.

        Args:
            title: Alert title
            message: Alert message body
            dedup_key: Key for deduplication (None to skip dedup)
            cooldown_seconds: Cooldown for this specific alert
            priority: Priority level ("low", "normal", "high", "critical")

        Returns:
            True if alert was sent, False if deduplicated or not delivered
        """
        if dedup_key:
            cooldown = cooldown_seconds or self._default_cooldown
            if not self._should_send(dedup_key, cooldown):
                logger.debug(f"Deduplicated alert: {dedup_key}")
                return False

        log = logger.error if priority in ("high", "critical") else logger.warning
        log(f"ALERT [{priority}] {title}: {message.strip()}")

        success = self._send_telegram(self._format_message(title, message, priority))

        if dedup_key and success:
            self._record_sent(dedup_key)

        return success

    # =========================================================================
    # Specialised alerts
    # =========================================================================

    def alert_selection_failed(self, cycle_id: int, found: int, required: int = 10) -> bool:
        return self.send_alert(
            title="🟡 Selection Failed",
            message=f"""
Cycle: {cycle_id}
Qualifying fixtures: {found}/{required}
The cycle stays Pending; the next selection tick retries.
""",
            dedup_key=f"selection_failed_{cycle_id}",
            cooldown_seconds=3600,
            priority="high",
        )

    def alert_result_conflict(
        self, fixture_id: str, stored: tuple[int, int], incoming: tuple[int, int]
    ) -> bool:
        return self.send_alert(
            title="🔴 Result Conflict",
            message=f"""
Fixture: {fixture_id}
Stored: {stored[0]}-{stored[1]}
Incoming: {incoming[0]}-{incoming[1]}
Resolve with: cycle-engine resolve-conflict {fixture_id} --home N --away M --note TEXT
""",
            dedup_key=f"conflict_{fixture_id}_{incoming[0]}_{incoming[1]}",
            cooldown_seconds=3600,
            priority="critical",
        )

    def alert_invalid_payload(self, fixture_id: str, reason: str) -> bool:
        return self.send_alert(
            title="🟡 Rejected Feed Payload",
            message=f"Fixture: {fixture_id}\nReason: {reason}",
            dedup_key=f"payload_{fixture_id}",
            cooldown_seconds=1800,
            priority="high",
        )

    def alert_rejected_event(self, event_name: str, tx_hash: str, log_index: int, reason: str) -> bool:
        return self.send_alert(
            title=f"🟡 Rejected {event_name} Log",
            message=f"Tx: {tx_hash}\nLog index: {log_index}\nReason: {reason}\nThe log is marked processed and skipped.",
            dedup_key=f"rejected_event_{tx_hash}_{log_index}",
            cooldown_seconds=3600,
            priority="high",
        )

    def alert_feed_exhausted(self, fixture_id: str, attempts: int, error: str) -> bool:
        return self.send_alert(
            title="🟡 Results Feed Unavailable",
            message=f"Fixture: {fixture_id}\nAttempts: {attempts}\nLast error: {error}",
            dedup_key=f"feed_exhausted_{fixture_id}",
            cooldown_seconds=1800,
            priority="normal",
        )

    def alert_immutable_violation(self, fixture_id: str, detail: str) -> bool:
        return self.send_alert(
            title="🔴 Immutable Field Changed Upstream",
            message=f"Fixture: {fixture_id}\n{detail}",
            dedup_key=f"immutable_{fixture_id}",
            cooldown_seconds=3600,
            priority="high",
        )

    def alert_transaction_reverted(self, cycle_id: int, kind: str, tx_hash: str, reason: str) -> bool:
        return self.send_alert(
            title="🔴 Transaction Reverted",
            message=f"""
Cycle: {cycle_id}
Call: {kind}
Tx: {tx_hash}
Reason: {reason}
The cycle is halted. Clear with: cycle-engine clear-halt {cycle_id}
""",
            dedup_key=f"reverted_{tx_hash}",
            cooldown_seconds=3600,
            priority="critical",
        )

    def alert_slate_mismatch(self, cycle_id: int, expected: str, actual: str) -> bool:
        return self.send_alert(
            title="🔴 Slate Mismatch",
            message=f"Cycle: {cycle_id}\nExpected: {expected}\nOn-chain: {actual}\nCycle cancelled.",
            dedup_key=f"slate_mismatch_{cycle_id}",
            cooldown_seconds=3600,
            priority="critical",
        )

    def alert_cycle_cancelled(self, cycle_id: int, reason: str) -> bool:
        return self.send_alert(
            title="🟡 Cycle Cancelled",
            message=f"Cycle: {cycle_id}\nReason: {reason}\nSlips are refund-eligible.",
            dedup_key=f"cancelled_{cycle_id}",
            cooldown_seconds=3600,
            priority="high",
        )

    def alert_chain_divergence(self, cycle_id: int, detail: str) -> bool:
        return self.send_alert(
            title="🔴 Chain / Store Divergence",
            message=f"Cycle: {cycle_id}\n{detail}",
            dedup_key=f"divergence_{cycle_id}",
            cooldown_seconds=3600,
            priority="critical",
        )

    def alert_cycle_issue(self, issue: str, cycle_id: Optional[int], message: str) -> bool:
        subject = f"Cycle: {cycle_id}\n" if cycle_id is not None else ""
        return self.send_alert(
            title=f"🟡 Cycle Monitor: {issue.replace('_', ' ')}",
            message=f"{subject}{message}",
            dedup_key=f"cycle_issue_{issue}_{cycle_id}",
            cooldown_seconds=3600,
            priority="high",
        )

    def alert_health_issue(self, component: str, status: str, message: str) -> bool:
        emoji = "🔴" if status.upper() == "UNHEALTHY" else "🟡"
        return self.send_alert(
            title=f"{emoji} Health Issue: {component}",
            message=f"""
Component: {component}
Status: {status}
Details: {message}
Time: {datetime.now(timezone.utc).isoformat()}
""",
            dedup_key=f"health_{component}_{status}",
            cooldown_seconds=300,
            priority="high" if status.upper() == "UNHEALTHY" else "normal",
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _should_send(self, key: str, cooldown: int) -> bool:
        record = self._sent_alerts.get(key)
        if record is None:
            return True
        return (time.time() - record.last_sent) >= cooldown

    def _record_sent(self, key: str) -> None:
        now = time.time()
        if key in self._sent_alerts:
            self._sent_alerts[key].last_sent = now
            self._sent_alerts[key].count += 1
        else:
            self._sent_alerts[key] = AlertRecord(key=key, last_sent=now)

    def _format_message(self, title: str, message: str, priority: str) -> str:
        priority_markers = {
            "critical": "🚨🚨🚨",
            "high": "⚠️",
            "normal": "",
            "low": "ℹ️",
        }
        marker = priority_markers.get(priority, "")
        header = f"{marker} *{title}*" if marker else f"*{title}*"
        return f"{header}\n\n{message.strip()}"

    def _send_telegram(self, text: str) -> bool:
        if self._telegram_api:
            try:
                self._telegram_api.send_message(
                    chat_id=self._chat_id,
                    text=text,
                    parse_mode="Markdown",
                )
                return True
            except Exception as e:
                logger.error(f"Telegram API error: {e}")
                return False

        if not self._bot_token or not self._chat_id:
            logger.debug("Telegram credentials not configured; alert logged only")
            return False

        try:
            response = httpx.post(
                self.TELEGRAM_URL.format(token=self._bot_token),
                json={"chat_id": self._chat_id, "text": text, "parse_mode": "Markdown"},
                timeout=self._timeout,
            )
            response.raise_for_status()
            logger.info(f"Sent Telegram alert: {text[:50]}...")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            return False

    def clear_dedup_cache(self) -> None:
        self._sent_alerts.clear()

    def get_alert_stats(self) -> Dict[str, int]:
        return {
            "unique_alerts": len(self._sent_alerts),
            "total_sent": sum(r.count for r in self._sent_alerts.values()),
        }
