import os
import re
from dataclasses import dataclass

from ytrelay.models import SubtitleLine, Utterance

_TIME_RE = re.compile(r"(\d+):(\d{2}):(\d{2})[,.](\d{3})")


@dataclass
class SrtBlock:
    index: int
    start_ms: int
    end_ms: int
    text: str


def format_srt_time_ms(ms: int) -> str:
    """Milliseconds to ``HH:MM:SS,mmm``."""
    ms = max(int(ms), 0)
    hours, rem = divmod(ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{millis:03d}"


def parse_srt_time(value: str) -> int:
    match = _TIME_RE.search(value)
    if not match:
        raise ValueError(f"Invalid SRT timestamp: {value!r}")
    h, m, s, ms = (int(g) for g in match.groups())
    return ((h * 60 + m) * 60 + s) * 1000 + ms


def render_blocks(blocks: list[SrtBlock]) -> str:
    return "".join(
        f"{b.index}\n{format_srt_time_ms(b.start_ms)} --> {format_srt_time_ms(b.end_ms)}\n{b.text}\n\n"
        for b in blocks
    )


def utterances_to_srt(utterances: list[Utterance]) -> str:
    """One numbered block per utterance, in input order."""
    return render_blocks([
        SrtBlock(index=i, start_ms=u.start_ms, end_ms=u.end_ms, text=u.text.strip())
        for i, u in enumerate(utterances, start=1)
    ])


def subtitle_lines_to_blocks(lines: list[SubtitleLine]) -> list[SrtBlock]:
    return [
        SrtBlock(
            index=i,
            start_ms=round(line.start * 1000),
            end_ms=round((line.start + line.duration) * 1000),
            text=line.text.strip(),
        )
        for i, line in enumerate(lines, start=1)
    ]


def blocks_to_subtitle_lines(blocks: list[SrtBlock]) -> list[SubtitleLine]:
    return [
        SubtitleLine(start=b.start_ms / 1000, duration=(b.end_ms - b.start_ms) / 1000, text=b.text)
        for b in blocks
    ]


def parse_srt(content: str) -> list[SrtBlock]:
    """Parse SRT text. Blocks without a valid time line are skipped."""
    blocks: list[SrtBlock] = []
    for chunk in re.split(r"\r?\n\s*\r?\n", content.strip()):
        lines = [ln for ln in chunk.splitlines() if ln.strip()]
        time_idx = next((i for i, ln in enumerate(lines) if "-->" in ln), None)
        if time_idx is None:
            continue
        start, _, end = lines[time_idx].partition("-->")
        try:
            start_ms, end_ms = parse_srt_time(start), parse_srt_time(end)
        except ValueError:
            continue
        blocks.append(SrtBlock(
            index=len(blocks) + 1,
            start_ms=start_ms,
            end_ms=end_ms,
            text="\n".join(lines[time_idx + 1:]).strip(),
        ))
    return blocks


def read_srt(path: str) -> list[SrtBlock]:
    with open(path, encoding="utf-8") as f:
        return parse_srt(f.read())


def write_srt(path: str, content: str):
    """Overwrite ``path`` atomically so a reader never sees a partial file."""
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8", newline="\n") as f:
        f.write(content)
    os.replace(tmp_path, path)
