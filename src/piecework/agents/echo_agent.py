"""Local demo agent for CLI provider integration tests."""

from __future__ import annotations

import argparse
import hashlib
import json
import os
import re
import sys
from pathlib import Path

_STATUS_TAG = re.compile(r"\[[A-Za-z0-9_.-]+:1\]")


def main(argv: list[str] | None = None) -> int:
    """Answer with the last first-rule status tag found in the prompt."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--fail", action="store_true")
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    if args.fail:
        sys.stderr.write("echo agent asked to fail\n")
        return 2

    tags = _STATUS_TAG.findall(prompt)
    digest = hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:12]
    payload = {
        "result": f"Echo agent done. {tags[-1] if tags else ''}".strip(),
        "session_id": f"echo-{digest}",
        "is_error": False,
        "persona": os.getenv("PIECEWORK_AGENT_PERSONA", ""),
    }
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
