"""
Output formatting -- JSON export and plain text.
"""
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict

from rmbt.params import TestParameters
from rmbt.results import TotalTestResult


def create_result_json(params: TestParameters, total: TotalTestResult) -> Dict[str, Any]:
    """Build a JSON-serialisable dict of the whole run."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "parameters": params.to_dict(),
        **total.to_dict(),
    }


def save_json(result: Dict[str, Any], filepath: str) -> None:
    """Write *result* to *filepath* atomically (write-tmp then rename)."""
    dir_path = os.path.dirname(filepath) or "."
    tmp = os.path.join(dir_path, f".tmp_{os.path.basename(filepath)}")

    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(result, fh, indent=2, ensure_ascii=False)
        os.replace(tmp, filepath)
    except OSError as exc:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise OSError(f"Failed to save JSON to {filepath}: {exc}") from exc


def format_text_result(params: TestParameters, total: TotalTestResult) -> str:
    sep = "=" * 50
    mid = "-" * 50
    mode = "1 (fallback)" if total.fallback else str(params.threads)
    return (
        f"{sep}\n"
        f"RMBT Results\n"
        f"{sep}\n"
        f"Server: {params.host}:{params.port}\n"
        f"Threads: {mode}\n"
        f"{mid}\n"
        f"Ping: {total.ping_ms:.1f} ms\n"
        f"Download: {total.download.speed_mbps:.2f} Mbps\n"
        f"Upload: {total.upload.speed_mbps:.2f} Mbps\n"
        f"{sep}"
    )
