from __future__ import annotations


class GEAITraderError(Exception):
    pass


class ConfigError(GEAITraderError):
    pass


class DependencyError(GEAITraderError):
    pass


class InsufficientHistoryError(GEAITraderError):
    """Item does not carry enough price history to compute indicators."""


class PredictionError(GEAITraderError):
    pass


class BackendUnavailableError(PredictionError):
    pass


class SessionError(GEAITraderError):
    pass


class SessionNotFoundError(SessionError):
    pass


class InvalidSessionTransition(SessionError):
    pass


class TradeError(GEAITraderError):
    pass


class DuplicateTradeError(TradeError):
    pass


class TradeNotFoundError(TradeError):
    pass


class RegistryError(GEAITraderError):
    pass


class ModelNotFoundError(RegistryError):
    pass


class StorageError(GEAITraderError):
    pass


class RecordNotFoundError(StorageError):
    pass
