"""
Incremental parsers for the sync tool's progress stream.

rclone is started with ``--use-json-log`` so most lines are JSON objects,
some carrying a ``stats`` mapping. Lines that fail to parse as JSON are
matched against the plain-text stats patterns instead. Neither path raises
on malformed input.
"""

from __future__ import annotations

import codecs
import json
import math
import re
from typing import Any, Dict, List, Optional, Union

SIZE_UNITS = {
    "B": 1,
    "BYTES": 1,
    "KIB": 1024,
    "KB": 1024,
    "MIB": 1024**2,
    "MB": 1024**2,
    "GIB": 1024**3,
    "GB": 1024**3,
    "TIB": 1024**4,
    "TB": 1024**4,
}
DISPLAY_UNITS = ["B", "KB", "MB", "GB", "TB"]
SUMMARY_SEPARATOR = " · "

SIZE_RE = re.compile(r"^\s*([\d.]+)\s*([A-Za-z]*)\s*$")
TEXT_BYTES_RE = re.compile(r"Transferred:\s+([\d.]+)\s*([A-Za-z]+)")
TEXT_FILES_RE = re.compile(r"Transferred:\s+(\d+)\s*/\s*(\d+),")
TEXT_ERRORS_RE = re.compile(r"Errors:\s+(\d+)")
TEXT_CHECKS_RE = re.compile(r"Checks:\s+(\d+)\s*/\s*(\d+)")
RATE_LIMIT_RE = re.compile(r"\b(?:403|429)\b|rate.?limit|quota", re.IGNORECASE)
RATE_LIMIT_FIELDS = ("msg", "err", "error")
MISSING_RE = re.compile(r"not in", re.IGNORECASE)


def parse_size(value: Union[str, float, int], unit: Optional[str] = None) -> int:
    """Convert a size to bytes using binary multiples for every unit spelling.

    ``parse_size("12.3 GiB")`` and ``parse_size("12.3", "GiB")`` are equivalent.
    Unknown units are treated as bytes; unparseable values yield 0.
    """
    if unit is None:
        if isinstance(value, (int, float)):
            return int(round(value))
        match = SIZE_RE.match(value)
        if not match:
            return 0
        number_text, unit = match.group(1), match.group(2)
    else:
        number_text = str(value)
    try:
        number = float(number_text)
    except ValueError:
        return 0
    multiplier = SIZE_UNITS.get((unit or "B").upper(), 1)
    return int(round(number * multiplier))


def format_bytes(num_bytes: float) -> str:
    if num_bytes <= 0:
        return "0 B"
    index = min(int(math.floor(math.log(num_bytes, 1024))), len(DISPLAY_UNITS) - 1)
    index = max(index, 0)
    return f"{num_bytes / (1024 ** index):.1f} {DISPLAY_UNITS[index]}"


def format_duration(seconds: float) -> str:
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    if total < 3600:
        return f"{total // 60}m {total % 60}s"
    return f"{total // 3600}h {(total % 3600) // 60}m"


format_eta = format_duration


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


class LineParser:
    """Line buffering, decoding and rate-limit scanning shared by both parsers."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.rate_limit_hits = 0
        self.lines_seen = 0
        self.malformed_lines = 0

    def feed(self, chunk: Union[bytes, str]) -> "LineParser":
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return self
        self._buffer += text
        *complete, self._buffer = self._buffer.split("\n")
        for line in complete:
            self._consume(line)
        return self

    def flush(self) -> "LineParser":
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._buffer += tail
        remainder, self._buffer = self._buffer, ""
        for line in remainder.split("\n"):
            self._consume(line)
        return self

    def _consume(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        self.lines_seen += 1
        try:
            entry = json.loads(line)
        except ValueError:
            entry = None
        if isinstance(entry, dict):
            message = " ".join(str(entry.get(key) or "") for key in RATE_LIMIT_FIELDS)
            if RATE_LIMIT_RE.search(message):
                self.rate_limit_hits += 1
            stats = entry.get("stats")
            if isinstance(stats, dict):
                self._apply_stats(stats)
            self._apply_entry(entry)
            return
        if RATE_LIMIT_RE.search(line):
            self.rate_limit_hits += 1
        self.malformed_lines += 1
        self._apply_text(line)

    def _apply_stats(self, stats: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _apply_entry(self, entry: Dict[str, Any]) -> None:
        pass

    def _apply_text(self, line: str) -> None:
        raise NotImplementedError


class TransferProgressParser(LineParser):
    """Counters for copy and mirror runs."""

    def __init__(self) -> None:
        super().__init__()
        self.bytes_transferred = 0
        self.files_transferred = 0
        self.errors_count = 0
        self.speed = 0.0
        self.eta: Optional[int] = None
        self.total_bytes = 0
        self.total_transfers = 0
        self.total_checks = 0
        self.elapsed_time = 0.0

    def _apply_stats(self, stats: Dict[str, Any]) -> None:
        value = _as_int(stats.get("bytes"))
        if value is not None:
            self.bytes_transferred = value
        value = _as_int(stats.get("transfers"))
        if value is not None:
            self.files_transferred = value
        value = _as_int(stats.get("errors"))
        if value is not None:
            self.errors_count = value
        speed = _as_float(stats.get("speed"))
        if speed is not None:
            self.speed = speed
        if "eta" in stats:
            self.eta = _as_int(stats.get("eta"))
        value = _as_int(stats.get("totalBytes"))
        if value is not None:
            self.total_bytes = value
        value = _as_int(stats.get("totalTransfers"))
        if value is not None:
            self.total_transfers = value
        value = _as_int(stats.get("totalChecks"))
        if value is not None:
            self.total_checks = value
        elapsed = _as_float(stats.get("elapsedTime"))
        if elapsed is not None:
            self.elapsed_time = elapsed

    def _apply_text(self, line: str) -> None:
        files_match = TEXT_FILES_RE.search(line)
        if files_match:
            self.files_transferred = int(files_match.group(1))
            self.total_transfers = int(files_match.group(2))
        else:
            bytes_match = TEXT_BYTES_RE.search(line)
            if bytes_match:
                self.bytes_transferred = parse_size(bytes_match.group(1), bytes_match.group(2))
        errors_match = TEXT_ERRORS_RE.search(line)
        if errors_match:
            self.errors_count = int(errors_match.group(1))

    def summary(self, elapsed_seconds: float) -> str:
        parts: List[str] = []
        if self.total_bytes > 0:
            pct = round(self.bytes_transferred / self.total_bytes * 100)
            parts.append(f"{format_bytes(self.bytes_transferred)} / {format_bytes(self.total_bytes)} ({pct}%)")
        else:
            parts.append(format_bytes(self.bytes_transferred))

        if self.total_transfers > 0:
            parts.append(f"{self.files_transferred}/{self.total_transfers} files")
        else:
            parts.append(f"{self.files_transferred} files")

        if self.speed > 0:
            avg_speed = self.bytes_transferred / elapsed_seconds if elapsed_seconds > 0 else 0.0
            if avg_speed > 0 and abs(self.speed - avg_speed) / avg_speed > 0.3:
                parts.append(f"{format_bytes(self.speed)}/s (avg {format_bytes(avg_speed)}/s)")
            else:
                parts.append(f"{format_bytes(self.speed)}/s")

        if elapsed_seconds > 10 and self.files_transferred > 0:
            parts.append(f"{self.files_transferred / elapsed_seconds:.1f} files/s")

        if self.eta is not None and self.eta > 0:
            parts.append(f"ETA {format_eta(self.eta)}")

        if self.rate_limit_hits > 0:
            parts.append(f"⚠ {self.rate_limit_hits} rate-limit hits")
        return SUMMARY_SEPARATOR.join(parts)


class VerifyProgressParser(LineParser):
    """Counters for one-way check runs: matched, differences, missing."""

    def __init__(self) -> None:
        super().__init__()
        self.matched_files = 0
        self.mismatched_files = 0
        self.missing_files = 0
        self.errors_count = 0
        self.total_checks = 0

    def _apply_stats(self, stats: Dict[str, Any]) -> None:
        value = _as_int(stats.get("checks"))
        if value is not None:
            self.matched_files = value
        value = _as_int(stats.get("totalChecks"))
        if value is not None:
            self.total_checks = value
        value = _as_int(stats.get("errors"))
        if value is not None:
            self.errors_count = value
        value = _as_int(stats.get("transfers"))
        if value is not None:
            self.mismatched_files = value

    def _apply_entry(self, entry: Dict[str, Any]) -> None:
        message = entry.get("msg")
        if isinstance(message, str) and MISSING_RE.search(message):
            self.missing_files += 1

    def _apply_text(self, line: str) -> None:
        checks_match = TEXT_CHECKS_RE.search(line)
        if checks_match:
            self.matched_files = int(checks_match.group(1))
            self.total_checks = int(checks_match.group(2))
        errors_match = TEXT_ERRORS_RE.search(line)
        if errors_match:
            self.errors_count = int(errors_match.group(1))

    @property
    def differences(self) -> int:
        return self.errors_count

    def summary(self, elapsed_seconds: float) -> str:
        parts: List[str] = []
        if self.total_checks > 0:
            pct = round(self.matched_files / self.total_checks * 100)
            parts.append(f"Checked {self.matched_files}/{self.total_checks} files ({pct}%)")
        else:
            parts.append(f"Checked {self.matched_files} files")
        if self.errors_count > 0:
            parts.append(f"{self.errors_count} differences found")
        if self.rate_limit_hits > 0:
            parts.append(f"⚠ {self.rate_limit_hits} rate-limit hits")
        return SUMMARY_SEPARATOR.join(parts)


class LogTail:
    """Keeps the last ``limit`` characters of combined process output."""

    def __init__(self, limit: int = 4000) -> None:
        self.limit = limit
        self._text = ""
        self._total = 0

    def append(self, text: str) -> None:
        if not text:
            return
        self._total += len(text)
        self._text += text
        if len(self._text) > self.limit * 2:
            self._text = self._text[-self.limit:]

    @property
    def truncated(self) -> bool:
        return self._total > self.limit

    def excerpt(self) -> str:
        if self.truncated:
            return "...\n" + self._text[-self.limit:]
        return self._text
