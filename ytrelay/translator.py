import logging
import os
import re
import sqlite3

from ytrelay.ai_service import AIServiceError, AIServiceManager
from ytrelay.db import update_translation
from ytrelay.models import PipelineContext, ProcessingState, VideoRecord, VideoStatus
from ytrelay.srt import SrtBlock, read_srt, render_blocks, write_srt
from ytrelay.tasks import Task

log = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 80
MAX_DESCRIPTION_LENGTH = 2000

LANGUAGE_NAMES = {
    "zh": "Simplified Chinese",
    "zh-CN": "Simplified Chinese",
    "en": "English",
    "ja": "Japanese",
}

_NUMBERED_LINE_RE = re.compile(r"^\s*(\d+)\s*[.:、)]\s*(.*)$")


def _language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


def _clean_single_line(text: str) -> str:
    text = text.strip().splitlines()[0] if text.strip() else ""
    return text.strip().strip('"“”「」').strip()


def parse_numbered_lines(response: str, expected: int) -> list[str] | None:
    """Extract ``N. text`` lines. Returns None unless exactly 1..expected came back."""
    found: dict[int, str] = {}
    for line in response.splitlines():
        match = _NUMBERED_LINE_RE.match(line)
        if match:
            found[int(match.group(1))] = match.group(2).strip()
    if sorted(found) != list(range(1, expected + 1)):
        return None
    return [found[i] for i in range(1, expected + 1)]


class Translator:
    def __init__(self, ai: AIServiceManager, target_language: str = "zh", batch_size: int = 20):
        self.ai = ai
        self.target = _language_name(target_language)
        self.batch_size = batch_size

    def translate_title(self, title: str) -> str:
        system = (
            f"You translate video titles into {self.target} for a Bilibili audience.\n"
            f"Keep it natural and under {MAX_TITLE_LENGTH} characters.\n"
            "Output only the translated title."
        )
        text, _ = self.ai.chat_completion(system, title)
        return _clean_single_line(text)[:MAX_TITLE_LENGTH]

    def translate_description(self, description: str) -> str:
        if not description.strip():
            return ""
        system = (
            f"You translate video descriptions into {self.target}.\n"
            "Keep links, hashtags and line breaks. Output only the translation."
        )
        text, _ = self.ai.chat_completion(system, description)
        return text.strip()[:MAX_DESCRIPTION_LENGTH]

    def _translate_batch(self, texts: list[str]) -> list[str]:
        system = (
            f"Translate each numbered subtitle line into {self.target}.\n"
            "Reply with the same numbering, one line per input line, and nothing else."
        )
        user = "\n".join(f"{i}. {t.replace(chr(10), ' ')}" for i, t in enumerate(texts, start=1))
        response, provider = self.ai.chat_completion(system, user)
        parsed = parse_numbered_lines(response, len(texts))
        if parsed is not None:
            return parsed
        log.warning("Batch of %d lines from %s came back misaligned; translating line by line", len(texts), provider)
        single_system = f"Translate this subtitle line into {self.target}. Output only the translation."
        return [_clean_single_line(self.ai.chat_completion(single_system, t)[0]) for t in texts]

    def translate_blocks(self, blocks: list[SrtBlock]) -> list[SrtBlock]:
        out: list[SrtBlock] = []
        for offset in range(0, len(blocks), self.batch_size):
            batch = blocks[offset:offset + self.batch_size]
            translated = self._translate_batch([b.text for b in batch])
            out.extend(
                SrtBlock(index=b.index, start_ms=b.start_ms, end_ms=b.end_ms, text=t or b.text)
                for b, t in zip(batch, translated)
            )
            log.info("Translated subtitle lines %d-%d of %d", offset + 1, offset + len(batch), len(blocks))
        return out


class TranslateTask(Task):
    name = "translate"
    completes_status = VideoStatus.TRANSLATED

    def __init__(
        self,
        state: ProcessingState,
        conn: sqlite3.Connection,
        record: VideoRecord,
        translator: Translator,
    ):
        self.state = state
        self.conn = conn
        self.record = record
        self.translator = translator

    def execute(self, context: PipelineContext) -> bool:
        if self.record.translated_title and os.path.isfile(self.state.translated_srt):
            log.info("Translation already present for %s", self.state.video_id)
            context.translated_title = self.record.translated_title
            context.translated_description = self.record.translated_description or ""
            context.translated_subtitle_path = self.state.translated_srt
            return True

        subtitle_path = context.subtitle_path or self.state.original_srt
        if not os.path.isfile(subtitle_path):
            return self.fail(context, f"subtitle file not found: {subtitle_path}")
        blocks = read_srt(subtitle_path)
        if not blocks:
            return self.fail(context, f"subtitle file has no blocks: {subtitle_path}")

        title = context.original_title or self.record.title or self.state.video_id
        description = context.original_description or self.record.description or ""
        try:
            translated_title = self.translator.translate_title(title)
            translated_description = self.translator.translate_description(description)
            translated_blocks = self.translator.translate_blocks(blocks)
        except AIServiceError as e:
            return self.fail(context, f"translation failed: {e}")
        if not translated_title:
            return self.fail(context, "translation returned an empty title")

        write_srt(self.state.translated_srt, render_blocks(translated_blocks))
        update_translation(self.conn, self.state.video_id, translated_title, translated_description)
        context.translated_title = translated_title
        context.translated_description = translated_description
        context.translated_subtitle_path = self.state.translated_srt
        return True
