"""Resource cross-reference output.

The host application binds resources by the indices written here, so both
forms are deterministic: a C header of index defines and a JSON document.
"""

import json
from typing import Any

from fslc.compiler.models import ResolvedTable, kind_label


def crossref_data(table: ResolvedTable) -> dict[str, Any]:
    """Cross-reference of a table as plain JSON-compatible data."""
    return {
        "table": table.name,
        "sets": [
            {
                "name": resolved_set.name,
                "ordinal": resolved_set.ordinal,
                "resources": [
                    {
                        "name": r.name,
                        "kind": kind_label(r.kind),
                        "index": r.index,
                        "count": r.count,
                    }
                    for r in resolved_set.resources
                ],
            }
            for resolved_set in table.sets
        ],
    }


def crossref_json(data: dict[str, Any]) -> str:
    """Serialize cross-reference data as the ``.srt.json`` document."""
    return json.dumps(data, indent=2) + "\n"


def crossref_header(data: dict[str, Any]) -> str:
    """Render cross-reference data as the ``.srt.h`` C header.

    Args:
        data: Output of ``crossref_data``

    Returns:
        Header text with per-resource index defines, set ordinals and counts
    """
    table = data["table"]
    lines = [
        f"// Resource cross-reference for table {table}.",
        "// Generated by fslc. Do not edit.",
        "#pragma once",
        "",
        "#ifndef SRT_RES_IDX",
        "#define SRT_RES_IDX(table, set, name) SRT_##table##_##set##_##name",
        "#endif",
        "",
    ]
    for resolved_set in data["sets"]:
        prefix = f"SRT_{table}_{resolved_set['name']}"
        lines.append(f"#define SRT_SET_{table}_{resolved_set['name']} {resolved_set['ordinal']}")
        for resource in resolved_set["resources"]:
            lines.append(f"#define {prefix}_{resource['name']} {resource['index']}")
        count = sum(r["count"] for r in resolved_set["resources"])
        lines.append(f"#define {prefix}_COUNT {count}")
        lines.append("")
    return "\n".join(lines)
