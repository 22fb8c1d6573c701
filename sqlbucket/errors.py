from typing import Any, Dict, Optional


class SqlBucketError(Exception):
    status = 500

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.message}


class AuthError(SqlBucketError):
    status = 401


class NotFoundError(SqlBucketError):
    status = 404


class MalformedRequestError(SqlBucketError):
    status = 400


class DataCorruptionError(SqlBucketError):
    status = 500


class ConflictError(SqlBucketError):
    status = 409


class StatementExecutionError(SqlBucketError):
    status = 400

    def __init__(self, statement: str, cause: Any):
        super().__init__(f'Error executing statement "{statement}": {cause}')
        self.statement = statement
        self.cause = cause


class PersistenceError(SqlBucketError):
    status = 500

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.message, 'persisted': False}


_BY_STATUS = {
    400: MalformedRequestError,
    401: AuthError,
    404: NotFoundError,
    409: ConflictError,
}


def error_for_status(status: int, message: str) -> SqlBucketError:
    cls = _BY_STATUS.get(status, SqlBucketError)
    return cls(message, status)
