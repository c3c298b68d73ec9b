"""Exception definitions.

例外定義を提供するモジュール。

このモジュールはMQTTクライアントで使用される例外クラスと
エラーメッセージの定義を提供します。
"""

from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from mqtt.protocol.state import InFlightPublish


class MQTTError(Exception):
    """MQTT関連の基本例外クラス.

    全てのMQTT関連の例外の基底クラスとして機能します。
    """


class ConfigError(MQTTError):
    """設定関連のエラー.

    接続オプションやトランスポート設定の値が不正な場合に発生します。
    """


class ChannelError(MQTTError):
    """チャンネル関連のエラー.

    TCP/WebSocket接続の確立や読み書き時に発生するエラーを表します。
    """


class PacketError(MQTTError):
    """パケット処理のエラー.

    エンコーダーに不正な値が渡された場合に発生します。
    """


class DecodeError(PacketError):
    """受信データのデコードエラー.

    固定ヘッダー、フラグ、残りの長さ、またはボディが不正な場合に発生します。
    呼び出し側のポリシーに従って接続を閉じる必要があります。
    """


class ConnectionRefused(MQTTError):
    """CONNACKで接続が拒否されたことを表すエラー.

    Attributes:
        code: CONNACKのリターンコード
    """

    def __init__(self, code: int) -> None:
        self.code = code
        reason = CONNACK_MESSAGES.get(code, f"予約済みのリターンコード ({code})")
        super().__init__(
            ERROR_MESSAGES["CONNECTION_REFUSED"].format(code=code, reason=reason)
        )


class ProtocolViolation(MQTTError):
    """プロトコル違反.

    期待していない確認応答や、現在の接続状態で受信してはならない
    パケットを受信した場合に報告されます。既定では接続を閉じません。

    Attributes:
        packet_type: 受信したパケットタイプ名
        packet_id: パケット識別子(存在する場合)
    """

    def __init__(
        self,
        packet_type: str,
        packet_id: Optional[int] = None,
        detail: str = "",
    ) -> None:
        self.packet_type = packet_type
        self.packet_id = packet_id
        super().__init__(
            ERROR_MESSAGES["PROTOCOL_VIOLATION"].format(
                packet_type=packet_type,
                packet_id=packet_id if packet_id is not None else "-",
                detail=detail,
            )
        )


class SessionDisconnected(MQTTError):
    """処理中の操作が残ったまま切断されたことを表すエラー.

    未完了のパブリッシュは失敗ではなく未解決として報告され、
    再接続時にdup=Trueで再送するかどうかは呼び出し側が決めます。

    Attributes:
        unresolved: 確認応答を受け取れなかったパブリッシュ
    """

    def __init__(
        self,
        unresolved: Optional[Sequence["InFlightPublish"]] = None,
        reason: str = "",
    ) -> None:
        self.unresolved: List["InFlightPublish"] = list(unresolved or [])
        super().__init__(
            ERROR_MESSAGES["SESSION_DISCONNECTED"].format(
                count=len(self.unresolved), reason=reason or "closed"
            )
        )


class SessionStateError(MQTTError):
    """APIの誤用.

    接続前のパブリッシュや使用中のパケット識別子の指定など、
    ワイヤー上のエラーとは区別される呼び出し側の契約違反です。
    """


# CONNACKリターンコードの説明
CONNACK_MESSAGES: Dict[int, str] = {
    0: "接続受け入れ",
    1: "サポートされていないプロトコルバージョンです",
    2: "クライアントIDが拒否されました",
    3: "サーバーが利用できません",
    4: "ユーザー名またはパスワードが不正です",
    5: "認可されていません",
}

# エラーメッセージ定義
ERROR_MESSAGES: Dict[str, str] = {
    "INVALID_CONFIG": "設定が不正です: {detail}",
    "CHANNEL_OPEN_FAILED": "チャンネルの確立に失敗しました: {reason}",
    "CHANNEL_IO_FAILED": "チャンネルの読み書きに失敗しました: {reason}",
    "CONNECTION_REFUSED": "接続が拒否されました: code={code} ({reason})",
    "PROTOCOL_VIOLATION": (
        "プロトコル違反: {packet_type} (id={packet_id}) {detail}"
    ),
    "SESSION_DISCONNECTED": "切断されました: 未解決 {count} 件 ({reason})",
    "PACKET_PARSE_ERROR": "パケットの解析に失敗しました: {detail}",
    "PACKET_BUILD_ERROR": "パケットの構築に失敗しました: {detail}",
}
