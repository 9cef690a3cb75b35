"""偵測結果輸出：JSON 結構化報告 + 可讀文字報告"""

import json
import os
from datetime import datetime, timezone

from .engine import DetectionResult
from .utils import VERSION, format_size


def build_report(result: DetectionResult, settings: dict | None = None) -> dict:
    """DetectionResult → 可序列化的報告 dict"""
    report = {
        "version": VERSION,
        "scan_time": datetime.now(timezone.utc).isoformat(),
        "settings": settings or {},
    }
    report.update(result.to_dict())
    report["space_saveable_bytes"] = sum(
        sum(m.size for m in group.members[1:])
        for group in result.groups
    )
    return report


def write_json_report(
    result: DetectionResult,
    json_path: str,
    settings: dict | None = None,
) -> dict:
    """寫入 JSON 結構化報告，回傳寫入的內容"""
    report = build_report(result, settings)

    directory = os.path.dirname(os.path.abspath(json_path))
    os.makedirs(directory, exist_ok=True)
    with open(json_path, 'w', encoding='utf-8') as f:
        json.dump(report, f, ensure_ascii=False, indent=2)

    return report


def format_text_report(result: DetectionResult) -> str:
    """產生可讀的文字報告（每組第一個成員標為 KEEP）"""
    lines = ["=" * 70, "Duplicate Image Report", "=" * 70, ""]

    for i, group in enumerate(result.groups, 1):
        keep, *others = group.members
        lines.append(f"--- Group #{i} ({len(group.members)} files) ---")
        lines.append(f"  KEEP: {keep.path} ({format_size(keep.size)})")
        for member in others:
            lines.append(f"  DUP:  {member.path} ({format_size(member.size)})")
        lines.append(
            f"  Save: {format_size(sum(m.size for m in others))}"
        )
        lines.append("")

    saveable = sum(
        sum(m.size for m in group.members[1:])
        for group in result.groups
    )
    lines.extend([
        "=" * 70,
        "Summary",
        "=" * 70,
        f"Files processed: {result.processed}",
        f"Duplicate groups: {len(result.groups)}",
        f"Duplicate files: {result.total_duplicates}",
        f"Space saveable: {format_size(saveable)}",
        f"Errors: {result.errors}",
    ])
    return "\n".join(lines) + "\n"
