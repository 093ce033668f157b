"""
Tests for the entry point: configuration loading, signer key references,
the command line and the singleton lock.
"""
import argparse
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cycle_engine.errors import ConfigMissingError
from cycle_engine.main import (
    OrchestratorConfig,
    REQUIRED_ALWAYS,
    SingletonEngineError,
    cmd_clear_halt,
    load_env_file,
    load_signer_key,
    main_async,
    parse_args,
    singleton_lock,
)

RUN_ENV = {
    "DATABASE_URL": "postgresql://cycles:cycles@db:5432/cycles",
    "RPC_URL": "http://node:8545",
    "CONTRACT_ADDRESS": "0x" + "12" * 20,
    "SIGNER_KEY_REF": "env:ORACLE_KEY",
    "RESULTS_FEED_URL": "https://feed.example/v1",
    "RESULTS_FEED_KEY": "secret",
}


# =============================================================================
# OrchestratorConfig Tests
# =============================================================================


class TestOrchestratorConfigFromEnv:
    def test_loads_defaults(self):
        with patch.dict("os.environ", RUN_ENV, clear=True):
            config = OrchestratorConfig.from_env()

        assert config.selection_cron == "0 6 * * *"
        assert config.confirmation_depth == 12
        assert config.qualify_threshold == 5
        assert config.odds_decimals == 2
        assert config.chain_id is None
        assert config.telegram_bot_token is None

    def test_loads_overrides(self):
        env = dict(RUN_ENV, CHAIN_ID="8453", SELECTION_WEIGHT_SPREAD="0.8", WORKER_POOL_SIZE="3")
        with patch.dict("os.environ", env, clear=True):
            config = OrchestratorConfig.from_env()

        assert config.chain_id == 8453
        assert config.selection_weight_spread == 0.8
        assert config.worker_pool_size == 3

    def test_missing_values_are_listed_together(self):
        with patch.dict("os.environ", {"DATABASE_URL": "postgresql://x"}, clear=True):
            with pytest.raises(ConfigMissingError) as exc:
                OrchestratorConfig.from_env()

        assert "RPC_URL" in exc.value.names
        assert "RESULTS_FEED_KEY" in exc.value.names
        assert "DATABASE_URL" not in exc.value.names

    def test_operator_commands_need_only_database(self):
        with patch.dict("os.environ", {"DATABASE_URL": "postgresql://x"}, clear=True):
            config = OrchestratorConfig.from_env(required=REQUIRED_ALWAYS)

        assert config.rpc_url == ""

    @pytest.mark.parametrize("name,value", [
        ("CONFIRMATION_DEPTH", "twelve"),
        ("SELECTION_CRON", "every morning"),
        ("QUALIFY_THRESHOLD", "11"),
        ("WORKER_POOL_SIZE", "0"),
    ])
    def test_malformed_values_are_rejected(self, name, value):
        with patch.dict("os.environ", dict(RUN_ENV, **{name: value}), clear=True):
            with pytest.raises(ConfigMissingError) as exc:
                OrchestratorConfig.from_env()

        assert any(n.startswith(name) for n in exc.value.names)


class TestLoadSignerKey:
    def test_env_reference(self):
        with patch.dict("os.environ", {"ORACLE_KEY": " 0xabc \n"}, clear=True):
            assert load_signer_key("env:ORACLE_KEY") == "0xabc"

    def test_file_reference(self, tmp_path):
        key_file = tmp_path / "signer.key"
        key_file.write_text("0xdef\n")

        assert load_signer_key(f"file:{key_file}") == "0xdef"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigMissingError):
            load_signer_key(f"file:{tmp_path / 'nope'}")

    def test_empty_key(self):
        with patch.dict("os.environ", {"ORACLE_KEY": ""}, clear=True):
            with pytest.raises(ConfigMissingError):
                load_signer_key("env:ORACLE_KEY")

    @pytest.mark.parametrize("ref", ["0xabc", "vault:secret/oracle", "env:"])
    def test_bad_reference(self, ref):
        with pytest.raises(ConfigMissingError):
            load_signer_key(ref)


# =============================================================================
# Command line
# =============================================================================


class TestParseArgs:
    def test_resolve_conflict(self):
        args = parse_args(["resolve-conflict", "501", "--home", "2", "--away", "1", "--note", "VAR review"])

        assert (args.fixture, args.home, args.away, args.note) == ("501", 2, 1, "VAR review")

    def test_negative_score_is_usage_error(self):
        with pytest.raises(SystemExit) as exc:
            parse_args(["resolve-conflict", "501", "--home", "-1", "--away", "1", "--note", "x"])

        assert exc.value.code == 2

    def test_command_is_required(self):
        with pytest.raises(SystemExit) as exc:
            parse_args([])

        assert exc.value.code == 2

    def test_clear_halt_takes_cycle_id(self):
        assert parse_args(["clear-halt", "17"]).cycle == 17


class TestMainAsync:
    @pytest.mark.asyncio
    async def test_missing_config_exits_1(self):
        with patch.dict("os.environ", {}, clear=True):
            assert await main_async(argparse.Namespace(command="status", limit=10)) == 1

    @pytest.mark.asyncio
    async def test_run_requires_chain_config(self):
        with patch.dict("os.environ", {"DATABASE_URL": "postgresql://x"}, clear=True):
            assert await main_async(argparse.Namespace(command="run")) == 1

    @pytest.mark.asyncio
    async def test_clear_halt(self, capsys):
        db = MagicMock()
        db.close = AsyncMock()
        repo = MagicMock()
        repo.clear_halt = AsyncMock(return_value=True)

        with patch("cycle_engine.main.open_database", AsyncMock(return_value=db)), \
                patch("cycle_engine.storage.repositories.CycleRepository", return_value=repo):
            code = await cmd_clear_halt(OrchestratorConfig(), argparse.Namespace(cycle=17))

        assert code == 0
        repo.clear_halt.assert_awaited_once_with(17)
        db.close.assert_awaited_once()
        assert "Cycle 17 resumed" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_clear_halt_on_running_cycle(self):
        db = MagicMock()
        db.close = AsyncMock()
        repo = MagicMock()
        repo.clear_halt = AsyncMock(return_value=False)

        with patch("cycle_engine.main.open_database", AsyncMock(return_value=db)), \
                patch("cycle_engine.storage.repositories.CycleRepository", return_value=repo):
            assert await cmd_clear_halt(OrchestratorConfig(), argparse.Namespace(cycle=17)) == 1


# =============================================================================
# Process helpers
# =============================================================================


class TestSingletonLock:
    def test_second_instance_is_refused(self, tmp_path):
        pid_file = str(tmp_path / "engine.pid")

        with singleton_lock(pid_file):
            with pytest.raises(SingletonEngineError):
                with singleton_lock(pid_file):
                    pass

    def test_lock_is_released(self, tmp_path):
        pid_file = tmp_path / "engine.pid"

        with singleton_lock(str(pid_file)):
            assert pid_file.read_text().strip().isdigit()
        assert not pid_file.exists()

        with singleton_lock(str(pid_file)):
            pass


class TestLoadEnvFile:
    def test_existing_variables_win(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text('# comment\nSELECTION_CRON="0 7 * * *"\nLOG_LEVEL=DEBUG\n')

        with patch.dict("os.environ", {"LOG_LEVEL": "WARNING"}, clear=True):
            load_env_file(str(env_file))

            assert os.environ["SELECTION_CRON"] == "0 7 * * *"
            assert os.environ["LOG_LEVEL"] == "WARNING"
