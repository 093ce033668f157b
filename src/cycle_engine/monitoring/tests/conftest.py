"""
Test fixtures for monitoring tests.
"""
from unittest.mock import MagicMock

import pytest

from cycle_engine.monitoring.alerting import AlertManager


@pytest.fixture
def mock_telegram_api():
    api = MagicMock()
    api.send_message = MagicMock()
    return api


@pytest.fixture
def alert_manager(mock_telegram_api):
    return AlertManager(telegram_chat_id="42", _telegram_api=mock_telegram_api)
