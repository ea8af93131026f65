"""Example wiring of the receipt search cache.

This script builds the cache stack on a SQLite file, caches a few search
responses, simulates receipt events and prints the resulting cache health.

Usage:
    cd ..
    python _examples/example.py [path_to_db]

Example:
    python _examples/example.py                    # Uses ./.cache/search_cache.db
    python _examples/example.py /tmp/cache.db      # Uses a custom database file
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cache import CacheManager, SearchCache, SearchParams
from cache_config import CACHE_CONFIG_DEFAULT
from conversations import (
    ChatMessage,
    ConversationStore,
    StoredConversation,
    create_conversation_metadata,
    generate_conversation_id,
)
from storage import SqliteStorage


class Colors:
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    BRIGHT_CYAN = "\033[96m"
    DIM = "\033[2m"
    RESET = "\033[0m"

logging.basicConfig(
    level=logging.INFO,
    format=Colors.DIM + '%(asctime)s [%(levelname)s] ◦ %(name)s ◦ %(message)s' + Colors.RESET,
    handlers=[
        logging.StreamHandler()
    ]
)

logging.getLogger("httpx").setLevel(logging.WARNING)


def print_step(title: str, payload: dict) -> None:
    print(f"🛠️  {Colors.YELLOW}{title}{Colors.RESET}")
    print(f"{Colors.BRIGHT_CYAN}{json.dumps(payload, indent=2)}{Colors.RESET}")


async def main() -> None:
    db_path = sys.argv[1] if len(sys.argv) > 1 else "./.cache/search_cache.db"
    user_id = "user-demo"

    storage = SqliteStorage(db_path)
    search_cache = SearchCache(storage=storage, config=CACHE_CONFIG_DEFAULT)
    conversations = ConversationStore(storage)
    manager = CacheManager(search_cache, conversations, storage=storage)

    await manager.initialize()

    params = SearchParams(query="coffee receipts", sources=["receipts"])
    response = {
        "success": True,
        "results": [{"id": "r-1", "title": "Corner Coffee", "similarity": 0.91}],
        "totalResults": 1,
    }

    conversation_id = generate_conversation_id()
    messages = [ChatMessage(id="m-1", type="user", content="Show my coffee receipts")]
    conversations.save_conversation(
        StoredConversation(create_conversation_metadata(conversation_id, messages), messages)
    )
    search_cache.set_for_conversation(conversation_id, params, user_id, response)
    conversations.update_conversation_search_cache(conversation_id, params, response)

    print_step("cache health after search", manager.get_cache_stats().to_dict())

    manager.invalidate_on_receipt_upload(user_id)
    print_step("cache health after receipt upload", manager.get_cache_stats().to_dict())

    print_step("cleanup report", manager.perform_scheduled_cleanup().to_dict())

    await manager.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
