"""Logging configuration.

ロギング設定を提供するモジュール。
主な機能:
- Richを使用したコンソールへのログ出力
- MQTTパケットのログ記録
- エラー情報のログ記録
"""

import json
import logging
from typing import Any, Dict, Optional, Union

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import CONSOLE_THEME, LOG_FORMAT

LOGGER_NAME = "mqttflow"

# ライブラリとしてのロガー。ハンドラーはsetup_loggingで設定する
logger = logging.getLogger(LOGGER_NAME)
logger.addHandler(logging.NullHandler())


def setup_logging(
    level: int = logging.INFO, console: Optional[Console] = None
) -> logging.Logger:
    """ロガーの初期設定を行う.

    アプリケーション側から一度だけ呼び出します。

    Args:
        level (int): ログレベル。デフォルトはINFO
        console (Optional[Console]): 出力先のコンソール

    Returns:
        logging.Logger: 設定済みのロガーインスタンス
    """
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    console = console or Console(theme=Theme(CONSOLE_THEME))
    rich_handler = RichHandler(
        console=console,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(level)
    rich_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(rich_handler)

    return logger


def log_packet(
    packet_type: str,
    packet_data: Union[bytes, Dict[str, Any]],
    direction: str = ">>",
    level: int = logging.DEBUG,
) -> None:
    """MQTTパケットをログに記録する.

    Args:
        packet_type (str): パケットの種類
        packet_data (Union[bytes, Dict[str, Any]]): パケットのデータ
            （バイト列または辞書）
        direction (str, optional): パケットの方向（>> = 送信、<< = 受信）.
            デフォルトは">>"
        level (int, optional): ログレベル. デフォルトはDEBUG
    """
    if not logger.isEnabledFor(level):
        return
    if isinstance(packet_data, (bytes, bytearray)):
        logger.log(level, f"{direction} {packet_type}: {packet_data.hex(' ')}")
    else:
        json_data = json.dumps(
            packet_data, ensure_ascii=False, indent=2, default=str
        )
        logger.log(level, f"{direction} {packet_type}:\n{json_data}")


def log_error(
    error_code: str,
    detail: Optional[Dict[str, Any]] = None,
    level: int = logging.ERROR,
) -> None:
    """エラー情報をログに記録する.

    Args:
        error_code (str): エラーコード
        detail (Optional[Dict[str, Any]], optional): エラーの詳細情報.
            デフォルトはNone
        level (int, optional): ログレベル. デフォルトはERROR
    """
    from .exceptions import ERROR_MESSAGES

    error_msg = ERROR_MESSAGES.get(error_code, "Unknown error: {detail}")
    if detail:
        try:
            error_msg = error_msg.format(**detail)
        except KeyError:
            error_msg = f"{error_code}: {detail}"
    logger.log(level, error_msg)
