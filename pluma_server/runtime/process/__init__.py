from .process_runner import ProcessHandle, ProcessRunner, classify_line_level, process_runner
from .types import OutputCallback, OutputLine, ProcessResult
