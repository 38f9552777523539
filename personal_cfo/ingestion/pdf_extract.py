"""PDF text extraction in an isolated child process.

Run as a script, the module is the child: it reads raw PDF bytes from stdin,
extracts page text with pdfplumber one page at a time, and writes a single
JSON object to stdout:

    python -m personal_cfo.ingestion.pdf_extract [--password=<pwd>] < statement.pdf

    {"success": true, "text": "..."}      exit code 0
    {"success": false, "error": "..."}    exit code 1

Imported, it is the parent side: `extract_text_from_pdf` spawns the child,
pipes the bytes in and enforces a timeout and an output cap, so a parser
crash or runaway document never takes down the calling process.
"""
import argparse
import io
import json
import logging
import os
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from personal_cfo.config import (
    MAX_PDF_SIZE_BYTES,
    PDF_EXTRACT_MAX_OUTPUT_BYTES,
    PDF_EXTRACT_SINGLE_THREAD_ENV,
    PDF_EXTRACT_TIMEOUT_SECONDS,
)
from personal_cfo.ingestion.statement_parser import normalize_extracted_text


logger = logging.getLogger(__name__)

PASSWORD_ERROR = "PDF is password protected or incorrect password provided"
PASSWORD_REQUIRED_MESSAGE = "PDF is password protected. Please provide the password to unlock."
EMPTY_TEXT_MESSAGE = "No text extracted from PDF. The file may be encrypted, image-only, or corrupt."

# Directory holding the personal_cfo package, importable by the child
PACKAGE_ROOT = str(Path(__file__).resolve().parents[2])

READ_CHUNK_BYTES = 64 * 1024
STDERR_MAX_BYTES = 4096


@dataclass
class ExtractionResult:
    success: bool
    text: str = ""
    error: Optional[str] = None

    @property
    def is_password_error(self) -> bool:
        return bool(self.error) and "password" in self.error.lower()


def _is_password_exception(exc: Exception) -> bool:
    detail = f"{type(exc).__name__} {exc} {exc.__cause__ or ''}".lower()
    return "password" in detail or "encrypt" in detail


def extract_pages(data: bytes, password: Optional[str] = None) -> str:
    """Extract text of every page, one page after another."""
    import pdfplumber

    pages: List[str] = []
    with pdfplumber.open(io.BytesIO(data), password=password or "") as pdf:
        for page in pdf.pages:
            pages.append(page.extract_text() or "")
    return "\n".join(pages)


def run_child(argv: Optional[List[str]] = None) -> int:
    """Child entry point. Never raises; always writes one JSON object."""
    parser = argparse.ArgumentParser(description="Extract text from a PDF read on stdin")
    parser.add_argument("--password", default=None, help="Password for encrypted PDFs")

    try:
        args = parser.parse_args(argv)
        data = sys.stdin.buffer.read()
        text = extract_pages(data, args.password)
        result = {"success": True, "text": text}
        code = 0
    except SystemExit:
        result = {"success": False, "error": "Invalid arguments"}
        code = 1
    except Exception as e:
        sys.stderr.write(f"{type(e).__name__}: {e}\n")
        if _is_password_exception(e):
            message = PASSWORD_ERROR
        else:
            message = str(e) or type(e).__name__
        result = {"success": False, "error": message}
        code = 1

    sys.stdout.write(json.dumps(result))
    sys.stdout.flush()
    return code


def validate_pdf_bytes(data: bytes, max_size: int = MAX_PDF_SIZE_BYTES) -> Optional[str]:
    """Return an error message for unacceptable uploads, None when fine."""
    if not data:
        return "File is empty"
    if len(data) > max_size:
        return f"File size exceeds {max_size // (1024 * 1024)}MB limit"
    if not data[:5].startswith(b"%PDF-"):
        return "File is not a valid PDF (invalid header)"
    return None


@dataclass
class ChildOutput:
    returncode: int
    stdout: bytes
    stderr: str
    over_limit: bool = False


def run_bounded(
    cmd: List[str],
    data: bytes,
    timeout: float,
    max_output_bytes: int,
    env: Optional[Dict[str, str]] = None
) -> ChildOutput:
    """Run `cmd` with `data` on stdin, keeping at most `max_output_bytes + 1` bytes of stdout.

    The child is killed as soon as its stdout passes the cap. When the timeout
    expires it is killed and subprocess.TimeoutExpired is raised. stderr goes
    to a temporary file and only its head is read back.
    """
    deadline = time.monotonic() + timeout
    with tempfile.TemporaryFile() as stderr_file:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=stderr_file,
            env=env
        )
        chunks: List[bytes] = []
        state = {"size": 0, "over_limit": False}

        def _feed():
            try:
                proc.stdin.write(data)
            except BrokenPipeError:
                pass  # child exited early; its exit status reports why
            try:
                proc.stdin.close()
            except BrokenPipeError:
                pass

        def _drain():
            while state["size"] <= max_output_bytes:
                chunk = proc.stdout.read(min(READ_CHUNK_BYTES, max_output_bytes + 1 - state["size"]))
                if not chunk:
                    return
                chunks.append(chunk)
                state["size"] += len(chunk)
            state["over_limit"] = True
            proc.kill()

        writer = threading.Thread(target=_feed, daemon=True)
        reader = threading.Thread(target=_drain, daemon=True)
        writer.start()
        reader.start()

        try:
            reader.join(max(0.0, deadline - time.monotonic()))
            if reader.is_alive():
                raise subprocess.TimeoutExpired(cmd, timeout)
            returncode = proc.wait(timeout=max(0.0, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            raise
        finally:
            reader.join()
            writer.join()
            proc.stdout.close()

        stderr_file.seek(0)
        stderr = stderr_file.read(STDERR_MAX_BYTES).decode("utf-8", errors="replace")

    return ChildOutput(returncode, b"".join(chunks), stderr, state["over_limit"])


def extract_text_from_pdf(
    data: bytes,
    password: Optional[str] = None,
    timeout: float = PDF_EXTRACT_TIMEOUT_SECONDS,
    max_output_bytes: int = PDF_EXTRACT_MAX_OUTPUT_BYTES
) -> ExtractionResult:
    """Extract and normalize PDF text through the child process.

    Never raises for extraction problems; they come back as a failed result.
    """
    cmd = [sys.executable, "-m", "personal_cfo.ingestion.pdf_extract"]
    if password:
        cmd.append(f"--password={password}")
    env = {**os.environ, **PDF_EXTRACT_SINGLE_THREAD_ENV}
    env["PYTHONPATH"] = os.pathsep.join(p for p in [PACKAGE_ROOT, env.get("PYTHONPATH")] if p)

    logger.info(f"pdf.extract.start bytes={len(data)}")
    try:
        proc = run_bounded(cmd, data, timeout, max_output_bytes, env=env)
    except subprocess.TimeoutExpired:
        logger.error(f"pdf.extract.timeout after {timeout}s")
        return ExtractionResult(False, error=f"PDF extraction timed out after {timeout:g}s")
    except OSError as e:
        logger.error(f"pdf.extract.spawn_failed: {e}")
        return ExtractionResult(False, error=f"PDF extraction failed: {e}")

    if proc.over_limit:
        logger.error(f"pdf.extract.output_too_large limit={max_output_bytes}")
        return ExtractionResult(False, error="PDF extraction output exceeds size limit")

    try:
        payload = json.loads(proc.stdout.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        detail = proc.stderr.strip()
        logger.error(f"pdf.extract.bad_output exit={proc.returncode}")
        return ExtractionResult(False, error=f"PDF extraction failed: {detail or 'invalid extractor output'}")

    if not payload.get("success"):
        error = payload.get("error") or "Unknown child extractor error"
        logger.error(f"pdf.extract.error exit={proc.returncode} error={error}")
        if "password" in error.lower() or "encrypt" in error.lower():
            return ExtractionResult(False, error=PASSWORD_REQUIRED_MESSAGE)
        return ExtractionResult(False, error=f"PDF extraction failed: {error}")

    text = normalize_extracted_text(payload.get("text", ""))
    if not text:
        return ExtractionResult(False, error=EMPTY_TEXT_MESSAGE)

    logger.info(f"pdf.extract.success chars={len(text)}")
    return ExtractionResult(True, text=text)


if __name__ == "__main__":
    sys.exit(run_child())
