"""Run the OCR and PDF-text binaries receipts are read with."""
import logging
import shutil
import subprocess
import time
from typing import Dict, Iterable, Optional, Sequence

from services import metrics

logger = logging.getLogger(__name__)

# Binary -> system package that ships it.
EXTRACTION_TOOLS: Dict[str, str] = {
    "tesseract": "tesseract-ocr",
    "pdftotext": "poppler-utils",
}

DEFAULT_TIMEOUT_SECONDS = 120
STDERR_TAIL_CHARS = 500


class ToolNotInstalledError(FileNotFoundError):
    def __init__(self, tool: str):
        package = EXTRACTION_TOOLS.get(tool, tool)
        super().__init__(f"'{tool}' is not installed; install {package} and retry.")
        self.tool = tool
        self.package = package


class CommandRunner:
    """Runs allowlisted extraction tools with shell disabled and returns stdout."""

    def __init__(self, tools: Optional[Iterable[str]] = None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.tools = set(tools or EXTRACTION_TOOLS)
        self.timeout = timeout

    def resolve(self, tool: str) -> str:
        if tool not in self.tools:
            raise ValueError(f"Blocked command '{tool}'. Not an extraction tool.")
        path = shutil.which(tool)
        if path is None:
            raise ToolNotInstalledError(tool)
        return path

    def run(self, tool: str, args: Sequence[str], *, timeout: Optional[float] = None) -> str:
        """Run ``tool`` with ``args``.

        Raises ToolNotInstalledError when the binary is missing and lets
        CalledProcessError / TimeoutExpired propagate to the caller.
        """
        executable = self.resolve(tool)
        argv = [executable, *[str(arg) for arg in args]]
        logger.debug("Running %s %s", tool, " ".join(argv[1:]))

        start_ts = time.time()
        success = False
        try:
            result = subprocess.run(
                argv,
                shell=False,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
            if result.returncode != 0:
                stderr = (result.stderr or "").strip()[-STDERR_TAIL_CHARS:]
                logger.warning("%s exited with %s: %s", tool, result.returncode, stderr)
                raise subprocess.CalledProcessError(result.returncode, argv, result.stdout, result.stderr)
            success = True
            return result.stdout or ""
        finally:
            metrics.record_command(command=tool, duration_ms=(time.time() - start_ts) * 1000, success=success)
