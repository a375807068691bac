"""
Parsing of uploaded usage files.

Clients upload newline-delimited JSON, one usage event per line. A line
that does not decode becomes a placeholder so ingestion counts it as
invalid at its index instead of rejecting the whole upload.
"""

import json
from typing import Any, List, Union

from ..storage.models import MalformedRecord

MAX_UPLOAD_BYTES = 50 * 1024 * 1024


def parse_jsonl(content: Union[str, bytes]) -> List[Any]:
    """Decode a JSONL upload into raw records.

    Blank lines are skipped and do not take an index.

    Raises:
        ValueError: If the upload exceeds the size limit
    """
    size = len(content) if isinstance(content, bytes) else len(content.encode("utf-8"))
    if size > MAX_UPLOAD_BYTES:
        raise ValueError(
            f"Upload of {size / 1024 / 1024:.2f} MB exceeds the "
            f"{MAX_UPLOAD_BYTES // (1024 * 1024)} MB limit"
        )
    if isinstance(content, bytes):
        content = content.decode("utf-8")

    records: List[Any] = []
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            records.append(MalformedRecord(reason=f"line is not valid JSON: {e.msg}"))
    return records
