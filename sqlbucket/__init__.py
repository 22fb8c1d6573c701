from .classifier import Statement, StatementKind, classify, classify_script
from .engine import EngineOutcome, EngineState, ExecutionEngine, ExecutionResult
from .errors import (
    AuthError,
    ConflictError,
    DataCorruptionError,
    MalformedRequestError,
    NotFoundError,
    PersistenceError,
    SqlBucketError,
    StatementExecutionError,
)
from .image import DatabaseHandle, ImageLifecycleManager
from .session import QueryOutcome, QuerySession
from .splitter import split

__version__ = '0.1.0'

__all__ = [
    'AuthError',
    'ConflictError',
    'DataCorruptionError',
    'DatabaseHandle',
    'EngineOutcome',
    'EngineState',
    'ExecutionEngine',
    'ExecutionResult',
    'ImageLifecycleManager',
    'MalformedRequestError',
    'NotFoundError',
    'PersistenceError',
    'QueryOutcome',
    'QuerySession',
    'SqlBucketError',
    'Statement',
    'StatementExecutionError',
    'StatementKind',
    'classify',
    'classify_script',
    'split',
]
