"""
Shop Service — 設定

他のサービスと同じく、環境変数から読み込むモジュール定数。
DATABASE_URL に memory:// を指定するとプロセス内ストアで動作する（開発・テスト用）。
"""

import os

DATABASE_URL = os.environ.get("DATABASE_URL", "memory://")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

# memory | redis
CACHE_BACKEND = os.environ.get("CACHE_BACKEND", "memory")
CACHE_PREFIX = os.environ.get("CACHE_PREFIX", "shop:")
CACHE_TTL_SECONDS = float(os.environ.get("CACHE_TTL_SECONDS", "3600"))

LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "10"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


def use_memory_store() -> bool:
    return DATABASE_URL.startswith("memory://")
