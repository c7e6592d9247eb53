import os
from dataclasses import dataclass, field
from enum import Enum


class VideoStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADED = "downloaded"
    CAPTIONED = "captioned"
    TRANSLATED = "translated"
    UPLOADED = "uploaded"
    FAILED = "failed"

    def rank(self) -> int:
        """Position in the forward lifecycle. FAILED sits outside it (-1)."""
        if self is VideoStatus.FAILED:
            return -1
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    VideoStatus.PENDING,
    VideoStatus.DOWNLOADED,
    VideoStatus.CAPTIONED,
    VideoStatus.TRANSLATED,
    VideoStatus.UPLOADED,
]


@dataclass
class SubtitleLine:
    start: float
    duration: float
    text: str


@dataclass
class Utterance:
    """One ASR segment; times in milliseconds."""
    start_ms: int
    end_ms: int
    text: str


@dataclass
class VideoRecord:
    video_id: str
    source_url: str = ""
    title: str = ""
    description: str = ""
    status: VideoStatus = VideoStatus.PENDING
    subtitles: list[SubtitleLine] = field(default_factory=list)
    playlist_id: str | None = None
    translated_title: str | None = None
    translated_description: str | None = None
    bvid: str | None = None
    aid: int | None = None
    video_published_at: str | None = None
    subtitle_attached: bool = False
    fail_count: int = 0
    upload_fail_count: int = 0
    last_error: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class ProcessingState:
    """Working paths for one pipeline run of a single video."""
    video_id: str
    current_dir: str

    @classmethod
    def for_video(cls, video_id: str, base_dir: str) -> "ProcessingState":
        current_dir = os.path.join(base_dir, video_id)
        os.makedirs(current_dir, exist_ok=True)
        return cls(video_id=video_id, current_dir=current_dir)

    @property
    def original_wav(self) -> str:
        return os.path.join(self.current_dir, "original.wav")

    @property
    def original_mp3(self) -> str:
        return os.path.join(self.current_dir, "original.mp3")

    @property
    def original_srt(self) -> str:
        return os.path.join(self.current_dir, "original.srt")

    @property
    def original_json(self) -> str:
        return os.path.join(self.current_dir, "original.json")

    @property
    def translated_srt(self) -> str:
        return os.path.join(self.current_dir, "translated.srt")

    @property
    def cover_path(self) -> str:
        return os.path.join(self.current_dir, "cover.jpg")


@dataclass
class PipelineContext:
    """Outputs accumulated by the stages of one chain run.

    Each stage reads what earlier stages set and fills in its own fields.
    A failing stage sets ``error`` before returning False.
    """
    downloaded_file: str | None = None
    original_title: str | None = None
    original_description: str | None = None
    subtitle_path: str | None = None
    transcript: list[SubtitleLine] | None = None
    translated_title: str | None = None
    translated_description: str | None = None
    translated_subtitle_path: str | None = None
    cover_url: str | None = None
    bvid: str | None = None
    aid: int | None = None
    error: str | None = None


@dataclass
class ProviderStatus:
    provider: str
    enabled: bool = False
    available: bool = False
    last_checked: str | None = None
    last_error: str | None = None
    model: str = ""
    base_url: str = ""


@dataclass
class AccountBinding:
    user_id: str
    platform: str
    platform_uid: str
    username: str = ""
    cookies: str = ""
    token: str = ""
    is_primary: bool = False
    created_at: str | None = None
    updated_at: str | None = None


def _collect_int_errors(obj, names: list[str], errors: list[str], minimum: int = 0):
    for name in names:
        value = getattr(obj, name)
        if not isinstance(value, int) or isinstance(value, bool):
            try:
                setattr(obj, name, int(value))
            except (TypeError, ValueError):
                errors.append(f"{name} must be an integer, got {value!r}")
                continue
        if getattr(obj, name) < minimum:
            errors.append(f"{name} must be >= {minimum}, got {getattr(obj, name)}")


def _raise_if_errors(kind: str, errors: list[str]):
    if errors:
        raise ValueError(f"Invalid {kind}:\n" + "\n".join(f"- {e}" for e in errors))


@dataclass
class ProxyConfig:
    use_proxy: bool = False
    proxy_host: str = ""

    def __post_init__(self):
        self.use_proxy = bool(self.use_proxy)
        self.proxy_host = (self.proxy_host or "").strip()
        errors: list[str] = []
        if self.use_proxy and not self.proxy_host:
            errors.append("proxy_host is required when use_proxy is true")
        _raise_if_errors("ProxyConfig", errors)

    @property
    def active(self) -> bool:
        return self.use_proxy and bool(self.proxy_host)


@dataclass
class ProviderConfig:
    name: str
    enabled: bool = False
    api_key: str = ""
    base_url: str = ""
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 4000
    timeout: int = 60
    max_retries: int = 3
    retry_delay: float = 2.0

    def __post_init__(self):
        errors: list[str] = []
        self.enabled = bool(self.enabled)
        self.api_key = self.api_key or ""
        _collect_int_errors(self, ["max_tokens", "timeout", "max_retries"], errors, minimum=1)
        for name in ("temperature", "retry_delay"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)):
                try:
                    setattr(self, name, float(value))
                except (TypeError, ValueError):
                    errors.append(f"{name} must be a number, got {value!r}")
                    continue
            if getattr(self, name) < 0:
                errors.append(f"{name} must be non-negative, got {getattr(self, name)}")
        if self.enabled and not self.base_url:
            errors.append(f"provider '{self.name}' is enabled but has no base_url")
        _raise_if_errors(f"ProviderConfig '{self.name}'", errors)


@dataclass
class AIConfig:
    primary_service: str = ""
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    target_language: str = "zh"
    subtitle_batch_size: int = 20

    def __post_init__(self):
        errors: list[str] = []
        _collect_int_errors(self, ["subtitle_batch_size"], errors, minimum=1)
        if self.primary_service and self.primary_service not in self.providers:
            errors.append(f"primary_service {self.primary_service!r} is not a configured provider")
        _raise_if_errors("AIConfig", errors)


@dataclass
class PipelineConfig:
    work_dir: str = "data/videos"
    db_path: str = "data/ytrelay.db"
    log_file: str = "data/ytrelay.log"
    config_dir: str = "."
    cookies_dir: str = "data/cookies"
    subtitle_source: str = "auto"
    asr_language: str = "zh"
    download_timeout_seconds: int = 3600
    max_chain_attempts: int = 3
    intake_poll_seconds: int = 60
    intake_batch_size: int = 5

    def __post_init__(self):
        errors: list[str] = []
        _collect_int_errors(
            self,
            ["download_timeout_seconds", "max_chain_attempts", "intake_poll_seconds", "intake_batch_size"],
            errors,
            minimum=1,
        )
        if self.subtitle_source not in ("auto", "platform", "asr"):
            errors.append(f"subtitle_source must be 'auto', 'platform' or 'asr', got {self.subtitle_source!r}")
        _raise_if_errors("PipelineConfig", errors)


@dataclass
class SchedulerConfig:
    interval_seconds: int = 3600
    subtitle_delay_seconds: int = 3600
    batch_size: int = 5
    max_upload_failures: int = 5

    def __post_init__(self):
        errors: list[str] = []
        _collect_int_errors(
            self,
            ["interval_seconds", "batch_size", "max_upload_failures"],
            errors,
            minimum=1,
        )
        _collect_int_errors(self, ["subtitle_delay_seconds"], errors, minimum=0)
        _raise_if_errors("SchedulerConfig", errors)


@dataclass
class BilibiliConfig:
    tid: int = 122
    tags: list[str] = field(default_factory=lambda: ["YouTube", "搬运"])
    copyright: int = 1
    subtitle_language: str = "zh-CN"
    login_file: str | None = None
    user_id: str = "system"
    chunk_retries: int = 3

    def __post_init__(self):
        errors: list[str] = []
        _collect_int_errors(self, ["tid", "chunk_retries"], errors, minimum=1)
        if self.copyright not in (1, 2):
            errors.append(f"copyright must be 1 (original) or 2 (repost), got {self.copyright!r}")
        if not isinstance(self.tags, list):
            errors.append(f"tags must be a list, got {type(self.tags).__name__}")
        _raise_if_errors("BilibiliConfig", errors)
