import enum


class ErrorKind(str, enum.Enum):
    """Категории ошибок синхронизации, которые видит оркестратор."""

    CONNECTIVITY = "connectivity"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    TRANSPORT = "transport"
    ITEM_ERROR = "item_error"


class SyncEngineError(Exception):
    """Базовая ошибка движка синхронизации."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ConnectivityError(SyncEngineError):
    kind = ErrorKind.CONNECTIVITY


class ChecksumMismatchError(SyncEngineError):
    """Контрольная сумма пачки не совпала. Пачка отклоняется целиком."""

    kind = ErrorKind.CHECKSUM_MISMATCH


class TransportError(SyncEngineError):
    """Запрос отправки пачки не дошёл до статусов по элементам."""

    kind = ErrorKind.TRANSPORT


class PerItemError(SyncEngineError):
    kind = ErrorKind.ITEM_ERROR
