"""
Test suite for configuration
"""

from pawn_core import config as config_module
from pawn_core.config import PawnConfig, get_config, reload_config


class TestPawnConfig:
    """Test environment-driven configuration"""
    
    def test_defaults(self, monkeypatch):
        for name in ("PAWN_DATABASE_URL", "PAWN_DUE_DATE_EXTENSION_DAYS",
                     "PAWN_SWEEP_INTERVAL_SECONDS", "PAWN_CURRENCY", "PAWN_REQUIRE_ACTIVE_SHIFT"):
            monkeypatch.delenv(name, raising=False)
        
        config = PawnConfig(_env_file=None)
        
        assert config.due_date_extension_days == 30
        assert config.sweep_interval_seconds == 86400
        assert config.transaction_number_attempts == 5
        assert config.currency == "USD"
        assert config.scheduler_enabled is True
        assert config.require_active_shift is True
    
    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PAWN_DATABASE_URL", "memory://")
        monkeypatch.setenv("PAWN_DUE_DATE_EXTENSION_DAYS", "14")
        monkeypatch.setenv("PAWN_SCHEDULER_ENABLED", "false")
        
        config = PawnConfig(_env_file=None)
        
        assert config.database_url == "memory://"
        assert config.due_date_extension_days == 14
        assert config.scheduler_enabled is False
    
    def test_reload_config_replaces_global(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("PAWN_API_PORT", "9001")
        try:
            reloaded = reload_config()
            assert reloaded.api_port == 9001
            assert get_config() is reloaded
        finally:
            config_module.config = original
