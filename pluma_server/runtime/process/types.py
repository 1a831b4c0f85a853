from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from ...models import LogLevel


@dataclass(frozen=True)
class OutputLine:
    stream: str
    level: LogLevel
    text: str


OutputCallback = Callable[[OutputLine], None]


class ProcessResult:
    """Normalized result of one finished automation process."""

    def __init__(
        self,
        exit_code: int,
        stdout: str,
        stderr: str,
        killed: bool = False,
    ) -> None:
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.killed = killed

    @property
    def output(self) -> str:
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.killed
