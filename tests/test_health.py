from papertrader.main import healthcheck

def test_healthcheck():
    result = healthcheck()
    assert "status" in result
    assert result["status"] == "ok"
    assert isinstance(result["feed_configured"], bool)


def test_healthcheck_reports_only_live_flags():
    result = healthcheck()
    assert set(result) == {"status", "timestamp", "version", "feed_configured", "ai_configured"}
