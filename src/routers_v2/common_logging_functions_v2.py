# Logging V2 - Request-scoped logger for scanner endpoints with optional job stream output
# Console lines: [timestamp,process pid,request n,function] message

import datetime, logging, os, sys
from typing import List, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
  from routers_v2.common_job_functions_v2 import StreamingJobWriter

logging.basicConfig(level=logging.INFO, format='%(message)s', handlers=[logging.StreamHandler(sys.stdout)])
logger = logging.getLogger(__name__)

# Monotonically increasing per process
_request_counter = 0

def format_milliseconds(millisecs: int) -> str:
  if millisecs < 1000: return f"{millisecs} ms"
  if millisecs < 50000:
    seconds_float = round(millisecs / 1000.0, 1)
    unit = "sec" if seconds_float == 1.0 else "secs"
    return f"{seconds_float:.1f} {unit}"
  secs = millisecs // 1000; hours = secs // 3600; minutes = (secs % 3600) // 60; seconds = secs % 60
  parts = []
  if hours: parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
  if minutes: parts.append(f"{minutes} min{'s' if minutes != 1 else ''}")
  if seconds: parts.append(f"{seconds} sec{'s' if seconds != 1 else ''}")
  return ', '.join(parts) if parts else "0 sec"

def pluralize(message: str, count: int) -> str:
  """Replace the first '(s)' in message depending on count: '3 item(s)' -> '3 items'."""
  return message.replace("(s)", "s" if count != 1 else "", 1)

class MiddlewareLogger:
  """
  Request-scoped logger. One instance per endpoint call or scan run.

  Usage:
    logger = MiddlewareLogger.create()
    logger.log_function_header("sharing_scan_sites")
    logger.log_function_output("Loading sites...")
    logger.log_function_footer()

    # Streaming: every line is also written to the job file as SSE 'log' event
    writer = StreamingJobWriter(...)
    logger = MiddlewareLogger.create(stream_job_writer=writer)

  A header opened inside another header is indented by INNER_LOG_INDENTATION per level.
  """

  INNER_LOG_INDENTATION = 2

  def __init__(self, request_number: int, stream_job_writer: Optional["StreamingJobWriter"] = None):
    self.request_number = request_number
    self.stream_job_writer = stream_job_writer
    self._function_name = ""
    # Open headers, outermost first
    self._frames: List[Tuple[str, datetime.datetime]] = []

  @classmethod
  def create(cls, stream_job_writer: Optional["StreamingJobWriter"] = None) -> "MiddlewareLogger":
    global _request_counter
    _request_counter += 1
    return cls(_request_counter, stream_job_writer)

  def log_function_header(self, function_name: str) -> Optional[str]:
    """
    Log function start. The outermost header names the request in console lines.
    Returns the SSE event string when a job writer is attached.
    """
    if not self._frames: self._function_name = function_name
    message = self._indent(f"START: {function_name}...")
    self._frames.append((function_name, datetime.datetime.now()))
    return self._log(message)

  def log_function_output(self, output: str) -> Optional[str]:
    return self._log(self._indent(output, inner=True))

  def log_function_footer(self) -> Optional[str]:
    """Log the end of the innermost open header with its duration."""
    if not self._frames: return None
    function_name, start_time = self._frames.pop()
    duration = format_milliseconds(int((datetime.datetime.now() - start_time).total_seconds() * 1000))
    return self._log(self._indent(f"END: {function_name} ({duration})."))

  def _indent(self, message: str, inner: bool = False) -> str:
    # Output lines sit at the level of the header they belong to
    depth = len(self._frames) - 1 if inner else len(self._frames)
    return " " * (self.INNER_LOG_INDENTATION * max(0, depth)) + message

  def _log(self, message: str) -> Optional[str]:
    now = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    logger.info(f"[{now},process {os.getpid()},request {self.request_number},{self._function_name}] {message}")
    if self.stream_job_writer is None: return None
    return self.stream_job_writer.emit_log(f"[{now}] {message}")
