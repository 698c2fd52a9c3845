"""Language-model oracles used by the autonomy controller."""

from taskhive.oracle.base import (
    MockOracle,
    OracleResult,
    TaskOracle,
    build_oracle,
    parse_oracle_payload,
)
from taskhive.oracle.http import ChatCompletionsOracle

__all__ = [
    "ChatCompletionsOracle",
    "MockOracle",
    "OracleResult",
    "TaskOracle",
    "build_oracle",
    "parse_oracle_payload",
]
