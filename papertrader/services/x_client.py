from typing import Dict, List, Optional
from datetime import datetime
import httpx
import logging
from papertrader.services.types import Post
from papertrader.config import get_settings
from papertrader.errors import FeedUnavailableError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

X_API_BASE = "https://api.twitter.com/2"

# Statuses that mean the feed cannot serve us for a while
_UNAVAILABLE_STATUSES = (401, 403, 429)


def _parse_created_at(value: Optional[str]) -> datetime:
    if not value:
        return datetime.utcnow()
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _media_urls(tweet: Dict, media_by_key: Dict[str, Dict]) -> List[str]:
    urls = []
    for key in (tweet.get("attachments") or {}).get("media_keys") or []:
        media = media_by_key.get(key, {})
        url = media.get("url") or media.get("preview_image_url")
        if url:
            urls.append(url)
    return urls


def _index(items, field: str) -> Dict[str, Dict]:
    return {item[field]: item for item in items or [] if isinstance(item, dict) and item.get(field)}


def _tweets(data: Dict) -> List[Dict]:
    return [t for t in data.get("data") or [] if isinstance(t, dict)]


def parse_tweet(tweet: Dict, user: Dict, media_by_key: Optional[Dict[str, Dict]] = None) -> Post:
    """Map an X API v2 tweet object (plus its author) to a Post."""
    metrics = tweet.get("public_metrics", {})
    verified = bool(user.get("verified"))
    return Post(
        id=str(tweet["id"]),
        author=user.get("username") or f"user_{tweet.get('author_id', '')}",
        text=tweet["text"],
        created_at=_parse_created_at(tweet.get("created_at")),
        like_count=metrics.get("like_count") or 0,
        repost_count=metrics.get("retweet_count") or 0,
        image_urls=_media_urls(tweet, media_by_key or {}),
        verified=verified,
        impact="high" if verified else "medium",
        source="x",
    )


class XClient:
    """
    Async client for the X API v2 content feed.

    Raises FeedUnavailableError on 401/403/429 (and when no bearer token is
    configured) so the caller can switch to the AI-backed content path.
    """

    def __init__(
        self,
        bearer_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.bearer_token = bearer_token if bearer_token is not None else settings.x_bearer_token
        self._client = client or httpx.AsyncClient(
            base_url=X_API_BASE,
            timeout=timeout or settings.request_timeout_seconds,
        )

    async def aclose(self):
        await self._client.aclose()

    async def _get(self, path: str, params: Dict) -> Dict:
        if not self.bearer_token:
            raise FeedUnavailableError("X bearer token not configured")

        headers = {
            "Authorization": f"Bearer {self.bearer_token}",
            "User-Agent": "papertrader/1.0",
        }
        try:
            response = await self._client.get(path, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"X API request failed: {e}") from e

        if response.status_code in _UNAVAILABLE_STATUSES:
            logger.warning(f"X API returned {response.status_code} for {path}")
            raise FeedUnavailableError(
                f"X API unavailable ({response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                f"X API error {response.status_code} for {path}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamUnavailableError(
                f"X API returned a non-JSON body for {path}",
                status_code=response.status_code,
            ) from e
        if not isinstance(body, dict):
            raise UpstreamUnavailableError(
                f"X API returned an unexpected {type(body).__name__} for {path}",
                status_code=response.status_code,
            )
        return body

    async def get_posts_by_authors(self, authors: List[str], max_per_author: int = 5) -> List[Post]:
        """
        Recent original posts (no retweets or replies) from each author.

        Args:
            authors: Account handles without the leading @
            max_per_author: Posts to keep per author

        Returns:
            Posts in author order, newest first within each author. A
            failing timeline is skipped; a rejection (401/403/429) after
            some posts were gathered stops the walk and keeps them.

        Raises:
            FeedUnavailableError: rejected before any posts were gathered
            UpstreamUnavailableError: the lookup failed or returned junk, or
                every timeline failed
        """
        if not authors:
            return []

        lookup = await self._get(
            "/users/by",
            {"usernames": ",".join(authors), "user.fields": "verified,username"},
        )
        users = [u for u in lookup.get("data") or [] if isinstance(u, dict) and u.get("id")]

        posts: List[Post] = []
        failure: Optional[UpstreamUnavailableError] = None
        for user in users:
            try:
                data = await self._get(
                    f"/users/{user['id']}/tweets",
                    {
                        # API accepts 5..100
                        "max_results": min(100, max(5, max_per_author)),
                        "tweet.fields": "created_at,public_metrics,attachments",
                        "expansions": "attachments.media_keys",
                        "media.fields": "url,preview_image_url",
                        "exclude": "retweets,replies",
                    },
                )
            except FeedUnavailableError:
                if not posts:
                    raise
                logger.warning(f"X feed rejected timeline for {user.get('username')}; keeping {len(posts)} posts")
                break
            except UpstreamUnavailableError as e:
                logger.warning(f"Skipping timeline for {user.get('username')}: {e}")
                failure = e
                continue
            media_by_key = _index((data.get("includes") or {}).get("media"), "media_key")
            for tweet in _tweets(data)[:max_per_author]:
                try:
                    posts.append(parse_tweet(tweet, user, media_by_key))
                except (KeyError, ValueError, TypeError) as e:
                    logger.warning(f"Failed to parse tweet {tweet.get('id', 'unknown')}: {e}")

        if not posts and failure is not None:
            raise failure
        logger.info(f"Retrieved {len(posts)} posts from X for {len(users)} authors")
        return posts

    async def search_posts(self, query: str, max_results: int = 20) -> List[Post]:
        """Recent English posts matching ``query``, retweets excluded."""
        data = await self._get(
            "/tweets/search/recent",
            {
                "query": f"{query} lang:en -is:retweet",
                # API accepts 10..100
                "max_results": min(100, max(10, max_results)),
                "tweet.fields": "created_at,public_metrics,author_id,attachments",
                "expansions": "author_id,attachments.media_keys",
                "user.fields": "username,verified",
                "media.fields": "url,preview_image_url",
            },
        )

        includes = data.get("includes") or {}
        users_by_id = _index(includes.get("users"), "id")
        media_by_key = _index(includes.get("media"), "media_key")

        posts: List[Post] = []
        for tweet in _tweets(data)[:max_results]:
            try:
                user = users_by_id.get(tweet.get("author_id", ""), {})
                posts.append(parse_tweet(tweet, user, media_by_key))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Failed to parse tweet {tweet.get('id', 'unknown')}: {e}")

        logger.info(f"Retrieved {len(posts)} posts from X for query {query!r}")
        return posts
