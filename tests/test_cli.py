"""Test the offline CLI commands."""

from cli import main


def test_resolve(capsys):
    assert main(["resolve", "ethereum", "apple"]) == 0
    out = capsys.readouterr().out
    assert "ETH-USD" in out
    assert "AAPL" in out


def test_resolve_nothing(capsys):
    assert main(["resolve", "qqqqqqqq"]) == 1


def test_parse(capsys):
    assert main(["parse", "sell 5 shares of NVDA"]) == 0
    assert '"symbol": "NVDA"' in capsys.readouterr().out


def test_parse_not_a_trade(capsys):
    assert main(["parse", "hello"]) == 1


def test_mentions(capsys):
    assert main(["mentions", "Loading up on $NVDA", "--scope", "nvidia", "AMD"]) == 0
    assert "Mentions: NVDA" in capsys.readouterr().out


def test_sentiment_file(tmp_path, capsys):
    posts = tmp_path / "posts.txt"
    posts.write_text("$AAPL breakout, bullish\n\n$AAPL looks weak\nStock market rally\n", encoding="utf-8")

    assert main(["sentiment", str(posts), "--scope", "AAPL"]) == 0
    out = capsys.readouterr().out
    assert "Analyzing 3 posts" in out
    assert "AAPL" in out
    assert "MARKET" in out


def test_sentiment_missing_file(tmp_path):
    assert main(["sentiment", str(tmp_path / "missing.txt")]) == 1


def test_no_command(capsys):
    assert main([]) == 1
