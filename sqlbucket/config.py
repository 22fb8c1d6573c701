import os
import tempfile
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Tuple


_TRUE = {'1', 'true', 'yes', 'on'}


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in _TRUE


def _list(value: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(',') if item.strip())


@dataclass(frozen=True)
class ServerConfig:
    host: str = '127.0.0.1'
    port: int = 8765
    storage_root: str = './data'
    work_dir: str = field(default_factory=tempfile.gettempdir)
    jwt_secret: str = ''
    jwt_algorithms: Tuple[str, ...] = ('HS256',)
    api_keys_file: Optional[str] = None
    cors_origins: Tuple[str, ...] = ('*',)
    backslash_escapes: bool = False
    verify_images: bool = True
    max_conflict_retries: int = 2
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ServerConfig':
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            host=env.get('SQLBUCKET_HOST', defaults.host),
            port=int(env.get('SQLBUCKET_PORT', defaults.port)),
            storage_root=env.get('SQLBUCKET_STORAGE_ROOT', defaults.storage_root),
            work_dir=env.get('SQLBUCKET_WORK_DIR', defaults.work_dir),
            jwt_secret=env.get('SQLBUCKET_JWT_SECRET', defaults.jwt_secret),
            jwt_algorithms=_list(env.get('SQLBUCKET_JWT_ALGORITHMS'), defaults.jwt_algorithms),
            api_keys_file=env.get('SQLBUCKET_API_KEYS_FILE', defaults.api_keys_file),
            cors_origins=_list(env.get('SQLBUCKET_CORS_ORIGINS'), defaults.cors_origins),
            backslash_escapes=_flag(env.get('SQLBUCKET_BACKSLASH_ESCAPES'), defaults.backslash_escapes),
            verify_images=_flag(env.get('SQLBUCKET_VERIFY_IMAGES'), defaults.verify_images),
            max_conflict_retries=int(env.get('SQLBUCKET_MAX_CONFLICT_RETRIES', defaults.max_conflict_retries)),
            log_level=env.get('SQLBUCKET_LOG_LEVEL', defaults.log_level).upper()
        )

    def override(self, **changes: Any) -> 'ServerConfig':
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
