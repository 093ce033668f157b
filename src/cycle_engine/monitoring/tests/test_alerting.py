"""
Tests for operator alerting.
"""
from unittest.mock import MagicMock, patch

import httpx

from cycle_engine.monitoring.alerting import AlertManager


class TestTelegramAlerts:
    """Tests for Telegram notification sending."""

    def test_sends_alert_message(self, alert_manager, mock_telegram_api):
        result = alert_manager.send_alert(title="Cycle Opened", message="Cycle 12 is open")

        assert result is True
        kwargs = mock_telegram_api.send_message.call_args.kwargs
        assert kwargs["chat_id"] == "42"
        assert "Cycle Opened" in kwargs["text"]
        assert kwargs["parse_mode"] == "Markdown"

    def test_handles_api_error_gracefully(self, alert_manager, mock_telegram_api):
        mock_telegram_api.send_message.side_effect = Exception("API error")

        assert alert_manager.send_alert(title="Test", message="Test") is False

    def test_returns_false_without_credentials(self):
        manager = AlertManager()

        assert manager.enabled is False
        assert manager.send_alert(title="Test", message="Test") is False

    def test_posts_with_httpx(self):
        manager = AlertManager(telegram_bot_token="TOKEN", telegram_chat_id="42")
        response = MagicMock()

        with patch("cycle_engine.monitoring.alerting.httpx.post", return_value=response) as post:
            assert manager.send_alert(title="T", message="M") is True

        assert post.call_args.args[0] == "https://api.telegram.org/botTOKEN/sendMessage"
        assert post.call_args.kwargs["json"]["chat_id"] == "42"

    def test_http_failure_is_not_raised(self):
        manager = AlertManager(telegram_bot_token="TOKEN", telegram_chat_id="42")

        with patch(
            "cycle_engine.monitoring.alerting.httpx.post",
            side_effect=httpx.ConnectError("refused"),
        ):
            assert manager.send_alert(title="T", message="M") is False


class TestAlertDeduplication:
    def test_deduplicates_repeated_alerts(self, alert_manager, mock_telegram_api):
        """Same conflict reported by every sweep must notify once."""
        assert alert_manager.alert_result_conflict("18535517", (2, 1), (1, 2)) is True
        assert alert_manager.alert_result_conflict("18535517", (2, 1), (1, 2)) is False

        assert mock_telegram_api.send_message.call_count == 1

    def test_different_incoming_scores_are_separate(self, alert_manager, mock_telegram_api):
        alert_manager.alert_result_conflict("18535517", (2, 1), (1, 2))
        alert_manager.alert_result_conflict("18535517", (2, 1), (3, 1))

        assert mock_telegram_api.send_message.call_count == 2

    def test_cooldown_expires(self, alert_manager, mock_telegram_api):
        with patch("cycle_engine.monitoring.alerting.time.time", side_effect=[1000.0, 1400.0, 1400.0]):
            alert_manager.send_alert("A", "a", dedup_key="k", cooldown_seconds=300)
            alert_manager.send_alert("A", "a", dedup_key="k", cooldown_seconds=300)

        assert mock_telegram_api.send_message.call_count == 2
        assert alert_manager.get_alert_stats() == {"unique_alerts": 1, "total_sent": 2}

    def test_failed_send_is_not_deduplicated(self, alert_manager, mock_telegram_api):
        mock_telegram_api.send_message.side_effect = [Exception("down"), None]

        assert alert_manager.alert_cycle_cancelled(9, "SlateMismatch") is False
        assert alert_manager.alert_cycle_cancelled(9, "SlateMismatch") is True

    def test_clear_cache(self, alert_manager, mock_telegram_api):
        alert_manager.alert_selection_failed(3, found=9)
        alert_manager.clear_dedup_cache()
        alert_manager.alert_selection_failed(3, found=9)

        assert mock_telegram_api.send_message.call_count == 2


class TestAlertContent:
    def test_reverted_tx_mentions_clear_halt(self, alert_manager, mock_telegram_api):
        alert_manager.alert_transaction_reverted(7, "startCycle", "0xdead", "CycleAlreadyStarted")

        text = mock_telegram_api.send_message.call_args.kwargs["text"]
        assert "clear-halt 7" in text
        assert text.startswith("🚨🚨🚨")

    def test_conflict_mentions_resolution_command(self, alert_manager, mock_telegram_api):
        alert_manager.alert_result_conflict("501", (2, 1), (1, 2))

        text = mock_telegram_api.send_message.call_args.kwargs["text"]
        assert "resolve-conflict 501" in text
        assert "Stored: 2-1" in text

    def test_rejected_event_names_the_log(self, alert_manager, mock_telegram_api):
        alert_manager.alert_rejected_event("SlipPlaced", "0xbeef", 3, "slip 9: Unknown market code 4")

        text = mock_telegram_api.send_message.call_args.kwargs["text"]
        assert "Rejected SlipPlaced Log" in text
        assert "0xbeef" in text
        assert "Log index: 3" in text

    def test_health_priority_follows_status(self, alert_manager):
        with patch("cycle_engine.monitoring.alerting.logger") as mock_logger:
            alert_manager.alert_health_issue("chain_rpc", "UNHEALTHY", "down")
            alert_manager.alert_health_issue("results_feed", "DEGRADED", "slow")

        mock_logger.error.assert_called_once()
        mock_logger.warning.assert_called_once()
