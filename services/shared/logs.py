"""
Shared — ログ設定

各サービスはモジュールごとに logging.getLogger(__name__) を使う。
ここではプロセス起動時に一度だけルートロガーを設定する。
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # SQL / HTTP クライアントのログは多すぎるので抑える
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
