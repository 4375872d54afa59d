"""
Utility and Logging Tests
=========================

Run with: pytest tests/ -v
"""

import sys
import json
import logging
from datetime import timedelta
from pathlib import Path

import pytest
from solders.keypair import Keypair

sys.path.insert(0, str(Path(__file__).parent.parent))

from logging_utils import JSONFormatter, MetricsCollector
from utils import (
    SecureLogger,
    ceil_div_seconds,
    format_duration,
    format_remaining,
    format_sol,
    jittered_interval,
    signed_jitter,
    sol_to_lamports,
    uniform_between,
    validate_public_key,
)


class TestFormatting:
    def test_format_sol(self):
        assert format_sol(1_500_000_000) == "1.500 SOL"
        assert format_sol(250_000_000) == "0.2500 SOL"

    def test_sol_to_lamports(self):
        assert sol_to_lamports(0.1) == 100_000_000

    def test_format_duration(self):
        assert format_duration(45) == "45s"
        assert format_duration(125) == "2m 5s"
        assert format_duration(7200) == "2h"

    def test_format_remaining(self):
        assert format_remaining(timedelta(minutes=5)) == "5m remaining"
        assert format_remaining(timedelta(hours=1, minutes=30)) == "1h 30m remaining"
        assert format_remaining(timedelta(seconds=-3)) == "0m remaining"


class TestRandomization:
    def test_signed_jitter_range(self):
        values = {signed_jitter(10) for _ in range(500)}
        assert all(-10 <= v <= 10 for v in values)
        assert any(v < 0 for v in values)
        assert any(v > 0 for v in values)

    def test_zero_delta(self):
        assert signed_jitter(0) == 0
        assert jittered_interval(30, 0) == 30

    def test_jittered_interval_bounds(self):
        for _ in range(200):
            assert 21 <= jittered_interval(30, 30) <= 39

    def test_uniform_between_swapped_bounds(self):
        for _ in range(100):
            assert 40 <= uniform_between(60, 40) <= 60

    def test_ceil_div(self):
        assert ceil_div_seconds(300, 30) == 10
        assert ceil_div_seconds(61, 30) == 3
        with pytest.raises(ValueError):
            ceil_div_seconds(60, 0)


class TestValidation:
    def test_public_key(self):
        assert validate_public_key(str(Keypair().pubkey()))
        assert not validate_public_key("")
        assert not validate_public_key("not-a-key")


class TestSecureLogger:
    def test_secret_redacted(self, caplog):
        secret = str(Keypair())
        log = SecureLogger(logging.getLogger("test_secure"))

        with caplog.at_level(logging.INFO, logger="test_secure"):
            log.info(f"loaded wallet {secret}")
            log.info("password=hunter22")

        assert secret not in caplog.text
        assert "[SECRET_REDACTED]" in caplog.text
        assert "hunter22" not in caplog.text

    def test_public_key_kept(self, caplog):
        public = str(Keypair().pubkey())
        log = SecureLogger(logging.getLogger("test_secure"))

        with caplog.at_level(logging.INFO, logger="test_secure"):
            log.info(f"funded {public}")

        assert public in caplog.text


class TestJSONFormatter:
    def test_format(self):
        record = logging.LogRecord("swarm_bot", logging.WARNING, __file__, 10, "round %d", (3,), None)
        data = json.loads(JSONFormatter().format(record))
        assert data["level"] == "WARNING"
        assert data["message"] == "round 3"
        assert data["source"]["line"] == 10


class TestMetricsCollector:
    def test_summary(self, tmp_path):
        metrics = MetricsCollector()
        metrics.record("buy")
        metrics.record("buy")
        metrics.record("buy", success=False)

        summary = metrics.get_summary()["operations"]["buy"]
        assert summary["total"] == 3
        assert summary["success_rate"] == 66.67
        assert metrics.count("sell") == 0

        out = tmp_path / "metrics.json"
        metrics.save_to_file(str(out))
        assert json.loads(out.read_text())["operations"]["buy"]["failure"] == 1

        metrics.clear()
        assert metrics.count("buy") == 0
