"""Client for the backend unified search function.

Searches are served from the search cache when possible and sent to the
``unified-search`` edge function otherwise.
"""

import logging
import time
from typing import Any, Dict, Optional

import httpx

from cache import SearchCache, SearchParams
from cache_config import (
    BACKEND_BASE_URL,
    CACHE_CONFIG_DEFAULT,
    UNIFIED_SEARCH_FUNCTION,
    CacheConfig,
)
from conversations import ConversationStore

logger = logging.getLogger(__name__)


class SearchRequestError(Exception):
    """Raised when the unified search endpoint returns an unusable response."""


class UnifiedSearchClient:
    """Cache-aside client for the unified search edge function.

    Lookups go to the search cache first; on a miss the request is sent to
    the backend's ``unified-search`` function and successful, non-empty
    responses are written back to the cache. Conversation searches also
    use the conversation cache tier and record results on the conversation.

    Failed requests are retried with exponential backoff. When every
    attempt fails the client returns an error response instead of raising,
    so callers render "no results" rather than crash.

    Example:
        >>> client = UnifiedSearchClient(
        ...     base_url="https://project.supabase.co",
        ...     api_key="anon-key",
        ...     search_cache=SearchCache(storage=MemoryStorage()),
        ... )
        >>> params = SearchParams(query="grocery receipts", sources=["receipts"])
        >>> response = client.search(params, user_id="user-1", access_token="jwt")
        >>> response["success"]
        True
    """

    def __init__(
        self,
        search_cache: SearchCache,
        api_key: str,
        base_url: str = BACKEND_BASE_URL,
        conversation_store: Optional[ConversationStore] = None,
        config: CacheConfig = CACHE_CONFIG_DEFAULT,
    ):
        """Initialize the search client.

        Args:
            search_cache: Cache consulted before every request
            api_key: Backend project API key sent as the ``apikey`` header
            base_url: Backend base URL
            conversation_store: Optional store that receives conversation
                search results and status updates
            config: Timeout and retry settings

        Raises:
            ValueError: If api_key is empty or max retries is less than 1
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key cannot be empty")
        if config.search_max_retries < 1:
            raise ValueError("search_max_retries must be at least 1")

        self.search_cache = search_cache
        self.conversation_store = conversation_store
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = config.search_timeout_seconds
        self.max_retries = config.search_max_retries
        self.api_url = f"{self.base_url}/functions/v1/{UNIFIED_SEARCH_FUNCTION}"

    def search(self, params: SearchParams, user_id: str, access_token: str) -> Dict[str, Any]:
        """Search receipts and other sources, serving repeated queries from cache.

        Args:
            params: Search parameters
            user_id: Id of the authenticated user (cache scope)
            access_token: User session token for the backend

        Returns:
            Unified search response. Cached responses carry ``"cached": True``.
        """
        search_start_time = time.time()

        cached = self.search_cache.get(params, user_id)
        if cached is not None:
            logger.info("Cache hit for search: %s", params.query[:50])
            return self._with_cache_flag(cached, True, search_start_time)

        try:
            response = self._execute_search(params, access_token)
        except SearchRequestError as e:
            return self._error_response(params, str(e), search_start_time)

        if response.get("results"):
            self.search_cache.set(params, user_id, response)
        return self._with_cache_flag(response, False, search_start_time)

    def search_for_conversation(
        self,
        conversation_id: str,
        params: SearchParams,
        user_id: str,
        access_token: str,
    ) -> Dict[str, Any]:
        """Search on behalf of a chat conversation.

        The conversation cache tier is consulted first. Fresh results are
        cached for the conversation and recorded in the conversation store
        with status ``completed``; a failed search sets status ``error``.
        """
        search_start_time = time.time()

        cached = self.search_cache.get_for_conversation(conversation_id, params, user_id)
        if cached is not None:
            self._update_status(conversation_id, "cached")
            return self._with_cache_flag(cached, True, search_start_time)

        self._update_status(conversation_id, "processing")
        try:
            response = self._execute_search(params, access_token)
        except SearchRequestError as e:
            self._update_status(conversation_id, "error")
            return self._error_response(params, str(e), search_start_time)

        if response.get("results"):
            self.search_cache.set_for_conversation(conversation_id, params, user_id, response)
        if self.conversation_store is not None:
            self.conversation_store.update_conversation_search_cache(
                conversation_id, params, response, status="completed"
            )
        return self._with_cache_flag(response, False, search_start_time)

    def _execute_search(self, params: SearchParams, access_token: str) -> Dict[str, Any]:
        """POST the search to the edge function, retrying with backoff.

        Raises:
            SearchRequestError: If every attempt fails
        """
        headers = {
            "Authorization": f"Bearer {access_token}",
            "apikey": self.api_key,
            "Content-Type": "application/json",
        }
        last_error: Optional[Exception] = None

        with httpx.Client(timeout=self.timeout) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    response = client.post(self.api_url, json=params.to_dict(), headers=headers)
                    response.raise_for_status()
                    data = response.json()
                    if not isinstance(data, dict) or not data.get("success"):
                        error = data.get("error") if isinstance(data, dict) else None
                        raise SearchRequestError(error or "Edge function returned unsuccessful response")
                    logger.debug("Search completed on attempt %d/%d", attempt, self.max_retries)
                    return data
                except (httpx.HTTPError, ValueError, SearchRequestError) as e:
                    last_error = e
                    logger.warning(
                        "Search attempt %d/%d failed: %s", attempt, self.max_retries, e
                    )
                    if attempt == self.max_retries:
                        break
                    delay = min(1.0 * 2 ** (attempt - 1), 3.0)
                    logger.info("Retrying search in %.1fs", delay)
                    time.sleep(delay)

        logger.error("All search attempts failed: %s", last_error)
        raise SearchRequestError(str(last_error) if last_error else "Search failed after all retries")

    def _update_status(self, conversation_id: str, status: str) -> None:
        if self.conversation_store is None:
            return
        try:
            self.conversation_store.update_conversation_search_status(conversation_id, status)
        except Exception:
            logger.exception("Failed to update status of conversation %s", conversation_id)

    @staticmethod
    def _with_cache_flag(response: Dict[str, Any], cached: bool, start_time: float) -> Dict[str, Any]:
        result = dict(response)
        result["cached"] = cached
        result["latency_ms"] = round((time.time() - start_time) * 1000, 2)
        return result

    @staticmethod
    def _error_response(params: SearchParams, error: str, start_time: float) -> Dict[str, Any]:
        return {
            "success": False,
            "error": error,
            "results": [],
            "totalResults": 0,
            "pagination": {"hasMore": False, "nextOffset": 0, "totalPages": 0},
            "searchMetadata": {
                "searchDuration": round((time.time() - start_time) * 1000, 2),
                "sourcesSearched": params.sources or ["receipts"],
                "fallbacksUsed": ["error_fallback"],
            },
            "cached": False,
        }
