import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import List

from .splitter import split


class StatementKind(Enum):
    QUERY = auto()
    SCHEMA = auto()
    MUTATION = auto()


_SCHEMA_PATTERN = re.compile(r'^(create|alter|drop)\s+', re.I)


@dataclass(frozen=True)
class Statement:
    text: str
    kind: StatementKind

    @property
    def is_query(self) -> bool:
        return self.kind is StatementKind.QUERY

    @property
    def is_schema(self) -> bool:
        return self.kind is StatementKind.SCHEMA


def classify(stmt: str) -> StatementKind:
    trimmed = stmt.strip()
    if trimmed.lower().startswith('select'):
        return StatementKind.QUERY
    if _SCHEMA_PATTERN.match(trimmed):
        return StatementKind.SCHEMA
    return StatementKind.MUTATION


def classify_script(script: str, backslash_escapes: bool = False) -> List[Statement]:
    return [
        Statement(text=stmt, kind=classify(stmt))
        for stmt in split(script, backslash_escapes)
    ]
