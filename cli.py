#!/usr/bin/env python3
"""
Paper Trader CLI Tool

Check symbol resolution, mention tagging, trade parsing and keyword sentiment
without running the web server or calling any external service.
"""

import argparse
import sys
from datetime import datetime
from typing import List
from papertrader.nlp.clean import normalize_post
from papertrader.nlp.mentions import extract_mentions
from papertrader.nlp.sentiment import score_post_heuristic, tally_directions
from papertrader.orchestration.aggregator import SentimentAggregator
from papertrader.services.resolver import resolve_ticker
from papertrader.services.types import Post
from papertrader.trading.commands import parse_trade_command
from papertrader.logging_config import setup_logging, get_logger

logger = get_logger(__name__)

def cmd_resolve(tokens: List[str]) -> int:
    """Resolve each token to a canonical symbol."""
    misses = 0
    for token in tokens:
        symbol = resolve_ticker(token)
        if symbol is None:
            misses += 1
        print(f"{token:<24} -> {symbol or '(unresolved)'}")
    return 1 if misses == len(tokens) else 0

def cmd_mentions(text: str, scope: List[str]) -> int:
    """Show which scope symbols a post is tagged with."""
    resolved = [s for s in (resolve_ticker(t) for t in scope) if s]
    mentions = extract_mentions(normalize_post(text), resolved)
    print(f"\n{'='*60}")
    print(f"Text:     {text}")
    print(f"Scope:    {', '.join(resolved) or '(empty)'}")
    print(f"Mentions: {', '.join(sorted(mentions)) or '(none)'}")
    print(f"{'='*60}\n")
    return 0

def cmd_parse(message: str) -> int:
    """Parse a trade command."""
    intent = parse_trade_command(message)
    if intent is None:
        print("Not a trade command")
        return 1
    print(intent.model_dump_json(indent=2, exclude_none=True))
    return 0

def cmd_sentiment(file_path: str, scope: List[str]) -> int:
    """Keyword sentiment over posts read one per line from a file."""
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            lines = [normalize_post(line) for line in f if line.strip()]
    except FileNotFoundError:
        logger.error(f"File not found: {file_path}")
        return 1

    now = datetime.utcnow()
    posts = [
        Post(id=str(i), author="cli", text=text, created_at=now)
        for i, text in enumerate(lines, 1)
    ]

    print(f"\nAnalyzing {len(posts)} posts from {file_path}")
    print(f"{'='*60}\n")
    for post in posts:
        print(f"{post.id:>4}. [{score_post_heuristic(post.text):<8}] {post.text[:60]}")

    resolved = [s for s in (resolve_ticker(t) for t in scope) if s]
    scores = SentimentAggregator(orchestrator=None).score_heuristic(posts, resolved)

    counts = tally_directions(posts)
    print(f"\n{'='*60}")
    print("SUMMARY")
    print(f"{'='*60}")
    print(f"Bullish posts: {counts['bullish']}  Bearish posts: {counts['bearish']}  Neutral posts: {counts['neutral']}")
    for symbol, score in scores.items():
        print(f"{symbol:<10} {score.bullish_pct:>3}% bull {score.bearish_pct:>3}% bear "
              f"{score.neutral_pct:>3}% neutral -> {score.overall} ({score.source}, {len(score.driving_post_ids)} posts)")
    print(f"{'='*60}\n")
    return 0

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Paper Trader CLI - offline checks of the signal pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python cli.py resolve ethereum '$tsla' apple
  python cli.py mentions "Buying more $NVDA before earnings" --scope NVDA AMD
  python cli.py parse "buy $1000 worth of ethereum"
  python cli.py sentiment posts.txt --scope AAPL TSLA
        """
    )
    parser.add_argument(
        '--log-level',
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)'
    )
    sub = parser.add_subparsers(dest='command')

    p_resolve = sub.add_parser('resolve', help='Resolve tickers, cashtags or names')
    p_resolve.add_argument('tokens', nargs='+')

    p_mentions = sub.add_parser('mentions', help='Tag a post against a scope')
    p_mentions.add_argument('text')
    p_mentions.add_argument('--scope', nargs='*', default=[])

    p_parse = sub.add_parser('parse', help='Parse a trade command')
    p_parse.add_argument('message')

    p_sentiment = sub.add_parser('sentiment', help='Keyword sentiment for posts in a file')
    p_sentiment.add_argument('file')
    p_sentiment.add_argument('--scope', nargs='*', default=[])
    return parser

def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    if args.command == 'resolve':
        return cmd_resolve(args.tokens)
    if args.command == 'mentions':
        return cmd_mentions(args.text, args.scope)
    if args.command == 'parse':
        return cmd_parse(args.message)
    if args.command == 'sentiment':
        return cmd_sentiment(args.file, args.scope)
    parser.print_help()
    return 1

if __name__ == '__main__':
    sys.exit(main())
