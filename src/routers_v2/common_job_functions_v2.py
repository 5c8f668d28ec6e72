# Streaming Jobs V2 - Buffered writer for scan job files
# Every streamed SSE event is mirrored into [storage]/jobs/[router]/[TIMESTAMP]_[[ACTION]]_[[JB_ID]]_[[OBJECT_ID]].[state]

import datetime, glob, json, os, re
from typing import Literal, Optional

from hardcoded_config import SCANNER_HARDCODED_CONFIG

JobState = Literal["running", "completed", "cancelled"]
JOB_STATES = ["running", "completed", "cancelled"]

class StreamingJobWriter:
  """
  Buffered writer for streaming job files. Handles dual output to HTTP and file.

  Usage:
    writer = StreamingJobWriter(
      persistent_storage_path="/home/data",
      router_name="sharing_scan",
      action="scan",
      object_id="sites",
      source_url="/v2/sharing_scan/scan?target=sites&format=stream",
      router_prefix="/v2"
    )
    yield writer.emit_start()
    yield writer.emit_log("Processing...")
    yield writer.emit_end(ok=True, data={"count": 10})
    writer.finalize()

  Log events emitted from code that cannot yield (callbacks, nested coroutines) are queued
  and handed to the HTTP response via drain_sse_queue().
  """

  def __init__(self, persistent_storage_path: str, router_name: str, action: str, object_id: Optional[str], source_url: str, router_prefix: str, buffer_size: int = None):
    self._persistent_storage_path = persistent_storage_path
    self._router_name = router_name
    self._action = action
    self._object_id = object_id
    self._source_url = source_url
    self._router_prefix = router_prefix
    self._buffer_size = buffer_size if buffer_size is not None else SCANNER_HARDCODED_CONFIG.PERSISTENT_STORAGE_LOG_EVENTS_PER_WRITE

    self._started_utc = datetime.datetime.now(datetime.timezone.utc)
    self._finished_utc: Optional[datetime.datetime] = None
    self._final_state: Optional[JobState] = None
    self._buffer: list[str] = []
    self._sse_queue: list[str] = []
    self._job_id: str = ""
    self._job_file_path: str = ""
    self._file_handle = None

    self._jobs_folder = os.path.join(persistent_storage_path, SCANNER_HARDCODED_CONFIG.PERSISTENT_STORAGE_PATH_JOBS_SUBFOLDER, router_name)
    os.makedirs(self._jobs_folder, exist_ok=True)
    self._create_job_file()

  def _create_job_file(self) -> None:
    """Create job file exclusively, retrying with a new job number on collision."""
    max_retries = 5
    timestamp = self._started_utc.strftime("%Y-%m-%d_%H-%M-%S")
    for attempt in range(max_retries):
      self._job_id = f"jb_{generate_job_number(self._persistent_storage_path)}"
      if self._object_id:
        filename = f"{timestamp}_[{self._action}]_[{self._job_id}]_[{self._object_id}].running"
      else:
        filename = f"{timestamp}_[{self._action}]_[{self._job_id}].running"
      self._job_file_path = os.path.join(self._jobs_folder, filename)
      try:
        fd = os.open(self._job_file_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        self._file_handle = os.fdopen(fd, 'w', encoding='utf-8')
        return
      except FileExistsError:
        continue
    raise RuntimeError(f"Failed to create job file after {max_retries} attempts")

  @property
  def job_id(self) -> str:
    return self._job_id

  @property
  def job_file_path(self) -> str:
    return self._job_file_path

  def _format_sse_event(self, event_type: str, data: str) -> str:
    sse_lines = [f"event: {event_type}"]
    for line in data.split('\n'):
      sse_lines.append(f"data: {line}")
    sse_lines.append("")
    sse_lines.append("")
    return '\n'.join(sse_lines)

  def _get_job_metadata(self, state: JobState, result: Optional[dict] = None) -> dict:
    return {
      "job_id": self._job_id,
      "state": state,
      "source_url": self._source_url,
      "started_utc": self._started_utc.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
      "finished_utc": self._finished_utc.strftime("%Y-%m-%dT%H:%M:%S.%fZ") if self._finished_utc else None,
      "result": result
    }

  def emit_start(self) -> str:
    """Emit start_json event. Flushed to file immediately."""
    sse = self._format_sse_event("start_json", json.dumps(self._get_job_metadata("running")))
    self._write_immediate(sse)
    return sse

  def emit_log(self, message: str) -> str:
    """Emit log event (buffered file write). Message already carries its timestamp."""
    sse = self._format_sse_event("log", message)
    self._write_buffered(sse)
    self._sse_queue.append(sse)
    return sse

  def drain_sse_queue(self) -> list[str]:
    """Return and clear log events that were emitted but not yet sent to the HTTP response."""
    events = self._sse_queue
    self._sse_queue = []
    return events

  def emit_end(self, ok: bool, error: str = "", data: dict = None, cancelled: bool = False) -> str:
    """
    Emit end_json event and flush everything to file.
    - cancelled=False: state="completed", result.ok indicates success/failure
    - cancelled=True: state="cancelled" (operator stop)
    """
    self._finished_utc = datetime.datetime.now(datetime.timezone.utc)
    self._final_state = "cancelled" if cancelled else "completed"
    result = {"ok": ok, "error": error, "data": data if data is not None else {}}
    sse = self._format_sse_event("end_json", json.dumps(self._get_job_metadata(self._final_state, result)))
    self._flush_buffer()
    self._write_immediate(sse)
    return sse

  def _write_immediate(self, content: str) -> None:
    if self._file_handle:
      self._file_handle.write(content)
      self._file_handle.flush()

  def _write_buffered(self, content: str) -> None:
    self._buffer.append(content)
    if len(self._buffer) >= self._buffer_size: self._flush_buffer()

  def _flush_buffer(self) -> None:
    if self._buffer and self._file_handle:
      self._file_handle.write(''.join(self._buffer))
      self._file_handle.flush()
      self._buffer.clear()

  def finalize(self) -> None:
    """Flush, close and rename the job file to its final state. Call from a finally block."""
    self._flush_buffer()
    if self._file_handle:
      self._file_handle.close()
      self._file_handle = None
    if self._final_state and os.path.exists(self._job_file_path):
      final_path = re.sub(r'\.running$', f'.{self._final_state}', self._job_file_path)
      if final_path != self._job_file_path:
        os.rename(self._job_file_path, final_path)
        self._job_file_path = final_path


# ----------------------------------------- START: Job file lookup ------------------------------------------------------------

def generate_job_number(persistent_storage_path: str) -> int:
  """Next job number: max existing [jb_N] across the most recent 1000 job files, plus one."""
  jobs_folder = os.path.join(persistent_storage_path, SCANNER_HARDCODED_CONFIG.PERSISTENT_STORAGE_PATH_JOBS_SUBFOLDER)
  if not os.path.exists(jobs_folder): return 1

  all_files = []
  for ext in JOB_STATES:
    all_files.extend(glob.glob(os.path.join(jobs_folder, "**", f"*.{ext}"), recursive=True))
  if not all_files: return 1

  all_files.sort(key=lambda f: os.path.getmtime(f), reverse=True)
  job_id_pattern = re.compile(r'\[jb_(\d+)\]')
  max_number = 0
  for filepath in all_files[:1000]:
    match = job_id_pattern.search(os.path.basename(filepath))
    if match: max_number = max(max_number, int(match.group(1)))
  return max_number + 1

def find_job_file(persistent_storage_path: str, job_id: str) -> Optional[str]:
  """Find job file path by job_id. Returns path or None."""
  jobs_folder = os.path.join(persistent_storage_path, SCANNER_HARDCODED_CONFIG.PERSISTENT_STORAGE_PATH_JOBS_SUBFOLDER)
  if not os.path.exists(jobs_folder): return None
  for ext in JOB_STATES:
    files = glob.glob(os.path.join(jobs_folder, "**", f"*[[]{job_id}[]]*.{ext}"), recursive=True)
    if files: return files[0]
  return None

def read_job_log(persistent_storage_path: str, job_id: str) -> str:
  """Read full SSE content of a job file."""
  filepath = find_job_file(persistent_storage_path, job_id)
  if not filepath: return ""
  with open(filepath, 'r', encoding='utf-8') as f:
    return f.read()

# ----------------------------------------- END: Job file lookup --------------------------------------------------------------
