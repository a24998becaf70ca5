from config import DEFAULT_USER_AGENT, load_settings


class TestLoadSettings:

    def test_defaults(self, monkeypatch):
        for key in ("LEADS_DATABASE_PATH", "LEADS_BATCH_MAX_JOBS", "LEADS_CORS_ORIGINS",
                    "LEADS_USER_AGENT", "LEADS_SCHEDULER_INTERVAL_S"):
            monkeypatch.delenv(key, raising=False)
        settings = load_settings()
        assert settings.database_path == "leads.db"
        assert settings.batch_max_jobs == 10
        assert settings.user_agent == DEFAULT_USER_AGENT
        assert settings.scheduler_interval_s == 0.0
        assert settings.cors_origins == ["*"]

    def test_environment_values(self, monkeypatch):
        monkeypatch.setenv("LEADS_BATCH_MAX_JOBS", "25")
        monkeypatch.setenv("LEADS_BATCH_TIMEOUT_S", "12.5")
        monkeypatch.setenv("LEADS_CORS_ORIGINS", "http://localhost:3000, https://app.example.org")
        monkeypatch.setenv("LEADS_RATE_LIMIT_ENABLED", "no")
        settings = load_settings()
        assert settings.batch_max_jobs == 25
        assert settings.batch_timeout_s == 12.5
        assert settings.cors_origins == ["http://localhost:3000", "https://app.example.org"]
        assert settings.rate_limit_enabled is False

    def test_garbage_falls_back(self, monkeypatch):
        monkeypatch.setenv("LEADS_BATCH_MAX_JOBS", "lots")
        assert load_settings().batch_max_jobs == 10

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("LEADS_DATABASE_PATH", "/tmp/env.db")
        assert load_settings({"database_path": "/tmp/override.db"}).database_path == "/tmp/override.db"
