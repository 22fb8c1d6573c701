import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .classifier import Statement, classify_script
from .engine import ExecutionEngine, ExecutionResult
from .errors import MalformedRequestError
from .image import ImageLifecycleManager


log = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode('ascii')
    return value


@dataclass
class QueryOutcome:
    results: List[ExecutionResult]
    rows_affected: int
    last_insert_id: Optional[int]
    output_image: bytes
    should_persist: bool
    statements: List[Statement] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            'results': [
                {
                    'query': result.query,
                    'results': [
                        {column: _jsonable(value) for column, value in row.items()}
                        for row in result.rows
                    ]
                }
                for result in self.results
            ],
            'rowsAffected': self.rows_affected,
            'lastInsertId': self.last_insert_id
        }


class QuerySession:
    """Load an image, run a script against it and export the result."""

    def __init__(
        self,
        lifecycle: Optional[ImageLifecycleManager] = None,
        backslash_escapes: bool = False,
        fetch_size: int = 1000
    ):
        self._lifecycle = lifecycle or ImageLifecycleManager()
        self._backslash_escapes = backslash_escapes
        self._fetch_size = fetch_size

    async def run(
        self,
        input_image: bytes,
        script: str,
        params: Sequence[Any] = ()
    ) -> QueryOutcome:
        if not isinstance(script, str):
            raise MalformedRequestError('Missing SQL query')
        if params is None:
            params = ()
        elif not isinstance(params, (list, tuple)):
            raise MalformedRequestError('params must be an array')

        statements = classify_script(script, self._backslash_escapes)
        if not statements:
            return QueryOutcome(
                results=[],
                rows_affected=0,
                last_insert_id=None,
                output_image=input_image,
                should_persist=False
            )

        async with self._lifecycle.open(input_image) as handle:
            engine = ExecutionEngine(
                handle,
                params=params,
                fetch_size=self._fetch_size,
                backslash_escapes=self._backslash_escapes
            )
            outcome = await engine.execute(statements)
            output_image, should_persist = await self._lifecycle.export_and_decide(handle, outcome)

        log.info(
            'Executed %d statements: rows_affected=%d schema_changed=%s persist=%s',
            outcome.statements_executed, outcome.rows_affected,
            outcome.schema_changed, should_persist
        )
        return QueryOutcome(
            results=outcome.results,
            rows_affected=outcome.rows_affected,
            last_insert_id=outcome.last_insert_id,
            output_image=output_image,
            should_persist=should_persist,
            statements=statements
        )
