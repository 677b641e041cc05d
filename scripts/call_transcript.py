#!/usr/bin/env python3
"""Pull the timestamped transcript of a call out of engine logs.

Usage:
    python scripts/call_transcript.py engine.log                  # last call, human-readable
    python scripts/call_transcript.py engine.log --raw            # last call, raw JSON
    python scripts/call_transcript.py engine.log --call-sid CA... # specific call
    journalctl -u reflectline | python scripts/call_transcript.py # read from stdin
"""

import argparse
import json
import sys


def parse_transcript_lines(lines: list[str], call_sid: str | None = None) -> list[dict]:
    """Parse TRANSCRIPT_DUMP lines from log output into transcript dicts.

    Chunks of one dump are stitched back together.  Returns complete
    transcripts, most recent last, optionally only those for ``call_sid``.
    """
    chunk_groups: dict[int, dict[int, str]] = {}
    group_counter = 0

    for line in lines:
        if "TRANSCRIPT_DUMP|" not in line:
            continue

        parts = line[line.index("TRANSCRIPT_DUMP|"):].split("|", 2)
        if len(parts) < 3:
            continue
        try:
            chunk_num = int(parts[1].split("/")[0])
        except ValueError:
            continue

        if chunk_num == 1:
            group_counter += 1
        chunk_groups.setdefault(group_counter, {})[chunk_num] = parts[2]

    transcripts = []
    for group_id in sorted(chunk_groups):
        chunks = chunk_groups[group_id]
        if 1 not in chunks:
            continue
        try:
            first = json.loads(chunks[1])
        except json.JSONDecodeError:
            continue

        if call_sid and first.get("call_sid") != call_sid:
            continue

        entries = list(first.get("entries", []))
        for i in sorted(chunks):
            if i == 1:
                continue
            try:
                entries.extend(json.loads(chunks[i]).get("entries", []))
            except json.JSONDecodeError:
                continue

        first["entries"] = entries
        transcripts.append(first)

    return transcripts


def format_transcript(transcript: dict, gap_threshold: float = 20.0) -> str:
    """Render a transcript with prompts, answers and long pauses between answers."""
    sid = transcript.get("call_sid", "unknown")
    owner = transcript.get("owner") or "unknown"
    duration = transcript.get("duration_s", 0)
    status = transcript.get("final_status", "unknown")

    lines = [f"Call {sid} | {owner} | {duration}s | {status}", "=" * 55]
    if transcript.get("error"):
        lines.append(f"error: {transcript['error']}")
    lines.append("")

    prev_t = None
    for entry in transcript.get("entries", []):
        t = entry.get("t", 0.0)
        if prev_t is not None and t - prev_t >= gap_threshold:
            lines.append(f"      : +{t - prev_t:.1f}s")

        tag = " (rating)" if entry.get("rating_prompt") else ""
        lines.append(f"{t:6.1f}s Q{entry.get('position', 0)}{tag}: {entry.get('prompt', '')}")
        lines.append(f"{'':8} A: {entry.get('answer', '')}")
        prev_t = t

    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(description="Pull timestamped transcript from engine logs")
    parser.add_argument("logfile", nargs="?", default="-", help="Log file to read (default: stdin)")
    parser.add_argument("--raw", action="store_true", help="Output raw JSON")
    parser.add_argument("--call-sid", type=str, default=None, help="Filter by specific call SID")
    parser.add_argument("--gap-threshold", type=float, default=20.0, help="Gap threshold in seconds (default: 20)")
    args = parser.parse_args()

    if args.logfile == "-":
        lines = sys.stdin.read().splitlines()
    else:
        try:
            with open(args.logfile, encoding="utf-8") as f:
                lines = f.read().splitlines()
        except OSError as e:
            print(f"Error: cannot read {args.logfile}: {e}", file=sys.stderr)
            sys.exit(1)

    transcripts = parse_transcript_lines(lines, call_sid=args.call_sid)
    if not transcripts:
        print("No transcript dumps found", file=sys.stderr)
        sys.exit(1)

    transcript = transcripts[-1]
    if args.raw:
        print(json.dumps(transcript, indent=2))
    else:
        print(format_transcript(transcript, gap_threshold=args.gap_threshold))


if __name__ == "__main__":
    main()
