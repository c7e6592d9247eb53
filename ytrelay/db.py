import json
import os
import sqlite3
from datetime import UTC, datetime

from ytrelay.models import AccountBinding, SubtitleLine, VideoRecord, VideoStatus


def get_connection(db_path: str) -> sqlite3.Connection:
    os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    try:
        init_schema(conn)
    except Exception:
        conn.close()
        raise
    return conn


def init_schema(conn: sqlite3.Connection):
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS videos (
            video_id TEXT PRIMARY KEY,
            source_url TEXT,
            title TEXT,
            description TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            subtitles TEXT,
            playlist_id TEXT,
            translated_title TEXT,
            translated_description TEXT,
            bvid TEXT,
            aid INTEGER,
            video_published_at TEXT,
            subtitle_attached INTEGER DEFAULT 0,
            fail_count INTEGER DEFAULT 0,
            upload_fail_count INTEGER DEFAULT 0,
            last_error TEXT,
            last_failed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS account_bindings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            platform TEXT NOT NULL,
            platform_uid TEXT NOT NULL,
            username TEXT,
            cookies TEXT,
            token TEXT,
            is_primary INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(user_id, platform, platform_uid)
        );

        CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);
        CREATE INDEX IF NOT EXISTS idx_bindings_platform ON account_bindings(platform, updated_at);
    """)
    # Migration: columns added after the first release
    cols = {row[1] for row in conn.execute("PRAGMA table_info(videos)").fetchall()}
    if "upload_fail_count" not in cols:
        conn.execute("ALTER TABLE videos ADD COLUMN upload_fail_count INTEGER DEFAULT 0")
    if "last_failed_at" not in cols:
        conn.execute("ALTER TABLE videos ADD COLUMN last_failed_at TEXT")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_videos_published ON videos(video_published_at)")


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _encode_subtitles(lines: list[SubtitleLine]) -> str:
    return json.dumps(
        [{"start": s.start, "duration": s.duration, "text": s.text} for s in lines],
        ensure_ascii=False,
    )


def _decode_subtitles(raw: str | None) -> list[SubtitleLine]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [
        SubtitleLine(start=float(d.get("start", 0)), duration=float(d.get("duration", 0)), text=d.get("text", ""))
        for d in data
        if isinstance(d, dict)
    ]


def _row_to_video(row: sqlite3.Row) -> VideoRecord:
    return VideoRecord(
        video_id=row["video_id"],
        source_url=row["source_url"] or "",
        title=row["title"] or "",
        description=row["description"] or "",
        status=VideoStatus(row["status"]),
        subtitles=_decode_subtitles(row["subtitles"]),
        playlist_id=row["playlist_id"],
        translated_title=row["translated_title"],
        translated_description=row["translated_description"],
        bvid=row["bvid"],
        aid=row["aid"],
        video_published_at=row["video_published_at"],
        subtitle_attached=bool(row["subtitle_attached"]),
        fail_count=row["fail_count"] or 0,
        upload_fail_count=row["upload_fail_count"] or 0,
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# ---------------------------------------------------------------------------
# Videos
# ---------------------------------------------------------------------------


def upsert_video(conn: sqlite3.Connection, record: VideoRecord) -> VideoRecord:
    """Insert a video, or reset an existing one to pending.

    Re-submitting a known video keeps its row (one per video_id) but clears
    every completion flag so the whole lifecycle runs again.
    """
    now = _now()
    subtitles = _encode_subtitles(record.subtitles) if record.subtitles else None
    conn.execute(
        """INSERT INTO videos
               (video_id, source_url, title, description, status, subtitles, playlist_id,
                created_at, updated_at)
           VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?)
           ON CONFLICT(video_id) DO UPDATE SET
               source_url = COALESCE(NULLIF(excluded.source_url, ''), videos.source_url),
               title = COALESCE(NULLIF(excluded.title, ''), videos.title),
               description = COALESCE(NULLIF(excluded.description, ''), videos.description),
               subtitles = COALESCE(excluded.subtitles, videos.subtitles),
               playlist_id = COALESCE(excluded.playlist_id, videos.playlist_id),
               status = 'pending',
               translated_title = NULL,
               translated_description = NULL,
               bvid = NULL,
               aid = NULL,
               video_published_at = NULL,
               subtitle_attached = 0,
               fail_count = 0,
               upload_fail_count = 0,
               last_error = NULL,
               last_failed_at = NULL,
               updated_at = excluded.updated_at""",
        (record.video_id, record.source_url, record.title, record.description,
         subtitles, record.playlist_id, now, now),
    )
    conn.commit()
    stored = get_video(conn, record.video_id)
    assert stored is not None
    return stored


def get_video(conn: sqlite3.Connection, video_id: str) -> VideoRecord | None:
    row = conn.execute("SELECT * FROM videos WHERE video_id = ?", (video_id,)).fetchone()
    return _row_to_video(row) if row else None


def list_videos_by_status(conn: sqlite3.Connection, statuses: list[VideoStatus], limit: int = 50) -> list[VideoRecord]:
    placeholders = ",".join("?" for _ in statuses)
    rows = conn.execute(
        f"SELECT * FROM videos WHERE status IN ({placeholders}) ORDER BY updated_at ASC LIMIT ?",
        [s.value for s in statuses] + [limit],
    ).fetchall()
    return [_row_to_video(r) for r in rows]


def advance_status(conn: sqlite3.Connection, video_id: str, status: VideoStatus) -> bool:
    """Move a video forward to ``status``. Returns True if the row changed.

    Backward moves are refused. FAILED may be entered from any state short of
    UPLOADED; only re-submission (upsert_video) leaves FAILED.
    """
    if status is VideoStatus.FAILED:
        allowed = [s for s in VideoStatus if s not in (VideoStatus.UPLOADED, VideoStatus.FAILED)]
    elif status is VideoStatus.PENDING:
        return False
    else:
        allowed = [s for s in VideoStatus if 0 <= s.rank() < status.rank()]
    placeholders = ",".join("?" for _ in allowed)
    cur = conn.execute(
        f"UPDATE videos SET status = ?, updated_at = ? WHERE video_id = ? AND status IN ({placeholders})",
        [status.value, _now(), video_id] + [s.value for s in allowed],
    )
    conn.commit()
    return cur.rowcount == 1


def update_video_metadata(conn: sqlite3.Connection, video_id: str, title: str | None, description: str | None):
    conn.execute(
        """UPDATE videos SET
               title = COALESCE(?, title),
               description = COALESCE(?, description),
               updated_at = ?
           WHERE video_id = ?""",
        (title, description, _now(), video_id),
    )
    conn.commit()


def save_subtitles(conn: sqlite3.Connection, video_id: str, lines: list[SubtitleLine]):
    conn.execute(
        "UPDATE videos SET subtitles = ?, updated_at = ? WHERE video_id = ?",
        (_encode_subtitles(lines), _now(), video_id),
    )
    conn.commit()


def update_translation(conn: sqlite3.Connection, video_id: str, title: str, description: str):
    conn.execute(
        """UPDATE videos SET translated_title = ?, translated_description = ?, updated_at = ?
           WHERE video_id = ?""",
        (title, description, _now(), video_id),
    )
    conn.commit()


def record_chain_failure(conn: sqlite3.Connection, video_id: str, error: str, max_attempts: int) -> int:
    """Store a chain failure without touching the stage status.

    Once fail_count reaches max_attempts the video is parked as FAILED.
    Returns the new fail_count.
    """
    now = _now()
    conn.execute(
        """UPDATE videos SET fail_count = COALESCE(fail_count, 0) + 1,
               last_error = ?, last_failed_at = ?, updated_at = ?
           WHERE video_id = ?""",
        (error, now, now, video_id),
    )
    conn.commit()
    row = conn.execute("SELECT fail_count FROM videos WHERE video_id = ?", (video_id,)).fetchone()
    fail_count = row["fail_count"] if row else 0
    if fail_count >= max_attempts:
        advance_status(conn, video_id, VideoStatus.FAILED)
    return fail_count


def videos_needing_processing(conn: sqlite3.Connection, limit: int = 5) -> list[VideoRecord]:
    return list_videos_by_status(
        conn, [VideoStatus.PENDING, VideoStatus.DOWNLOADED, VideoStatus.CAPTIONED], limit=limit,
    )


# ---------------------------------------------------------------------------
# Upload scheduler
# ---------------------------------------------------------------------------


def videos_ready_for_publish(conn: sqlite3.Connection, limit: int = 5, max_failures: int = 5) -> list[VideoRecord]:
    rows = conn.execute(
        """SELECT * FROM videos
           WHERE status = 'translated' AND bvid IS NULL AND video_published_at IS NULL
             AND COALESCE(upload_fail_count, 0) < ?
           ORDER BY updated_at ASC LIMIT ?""",
        (max_failures, limit),
    ).fetchall()
    return [_row_to_video(r) for r in rows]


def videos_ready_for_subtitles(
    conn: sqlite3.Connection,
    published_before: str,
    limit: int = 5,
    max_failures: int = 5,
) -> list[VideoRecord]:
    """Published videos whose subtitle phase is due."""
    rows = conn.execute(
        """SELECT * FROM videos
           WHERE status = 'uploaded' AND bvid IS NOT NULL
             AND COALESCE(subtitle_attached, 0) = 0
             AND video_published_at IS NOT NULL AND video_published_at <= ?
             AND COALESCE(upload_fail_count, 0) < ?
           ORDER BY video_published_at ASC LIMIT ?""",
        (published_before, max_failures, limit),
    ).fetchall()
    return [_row_to_video(r) for r in rows]


def mark_video_published(
    conn: sqlite3.Connection,
    video_id: str,
    bvid: str,
    aid: int | None,
    published_at: str | None = None,
) -> bool:
    """Record the first publish. Returns False if the video was already published."""
    published_at = published_at or _now()
    cur = conn.execute(
        """UPDATE videos SET bvid = ?, aid = ?, video_published_at = ?, status = 'uploaded',
               upload_fail_count = 0, last_error = NULL, updated_at = ?
           WHERE video_id = ? AND bvid IS NULL AND status = 'translated'""",
        (bvid, aid, published_at, _now(), video_id),
    )
    conn.commit()
    return cur.rowcount == 1


def mark_subtitle_attached(conn: sqlite3.Connection, video_id: str) -> bool:
    cur = conn.execute(
        """UPDATE videos SET subtitle_attached = 1, upload_fail_count = 0, last_error = NULL, updated_at = ?
           WHERE video_id = ? AND COALESCE(subtitle_attached, 0) = 0""",
        (_now(), video_id),
    )
    conn.commit()
    return cur.rowcount == 1


def record_upload_failure(conn: sqlite3.Connection, video_id: str, error: str) -> int:
    now = _now()
    conn.execute(
        """UPDATE videos SET upload_fail_count = COALESCE(upload_fail_count, 0) + 1,
               last_error = ?, last_failed_at = ?, updated_at = ?
           WHERE video_id = ?""",
        (error, now, now, video_id),
    )
    conn.commit()
    row = conn.execute("SELECT upload_fail_count FROM videos WHERE video_id = ?", (video_id,)).fetchone()
    return row["upload_fail_count"] if row else 0


# ---------------------------------------------------------------------------
# Account bindings
# ---------------------------------------------------------------------------


def _row_to_binding(row: sqlite3.Row) -> AccountBinding:
    return AccountBinding(
        user_id=row["user_id"],
        platform=row["platform"],
        platform_uid=row["platform_uid"],
        username=row["username"] or "",
        cookies=row["cookies"] or "",
        token=row["token"] or "",
        is_primary=bool(row["is_primary"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def save_binding(conn: sqlite3.Connection, binding: AccountBinding):
    """Insert or refresh a binding. Credentials are stored as given (callers encrypt)."""
    now = _now()
    conn.execute(
        """INSERT INTO account_bindings
               (user_id, platform, platform_uid, username, cookies, token, is_primary, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
           ON CONFLICT(user_id, platform, platform_uid) DO UPDATE SET
               username = excluded.username,
               cookies = excluded.cookies,
               token = excluded.token,
               updated_at = excluded.updated_at""",
        (binding.user_id, binding.platform, binding.platform_uid, binding.username,
         binding.cookies, binding.token, now, now),
    )
    conn.commit()


def set_primary_binding(conn: sqlite3.Connection, user_id: str, platform: str, platform_uid: str) -> bool:
    """Make one binding the primary for user+platform.

    Clear-all-then-set-one runs in a single IMMEDIATE transaction so two
    writers can never leave two primaries behind. Returns False (and changes
    nothing) if the target binding does not exist.
    """
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            "UPDATE account_bindings SET is_primary = 0 WHERE user_id = ? AND platform = ?",
            (user_id, platform),
        )
        cur = conn.execute(
            """UPDATE account_bindings SET is_primary = 1, updated_at = ?
               WHERE user_id = ? AND platform = ? AND platform_uid = ?""",
            (_now(), user_id, platform, platform_uid),
        )
        if cur.rowcount != 1:
            conn.rollback()
            return False
        conn.commit()
        return True
    except Exception:
        conn.rollback()
        raise


def get_primary_binding(conn: sqlite3.Connection, user_id: str, platform: str) -> AccountBinding | None:
    row = conn.execute(
        "SELECT * FROM account_bindings WHERE user_id = ? AND platform = ? AND is_primary = 1",
        (user_id, platform),
    ).fetchone()
    return _row_to_binding(row) if row else None


def get_latest_binding(conn: sqlite3.Connection, platform: str) -> AccountBinding | None:
    """Most recently refreshed binding for a platform, used by system-level jobs."""
    row = conn.execute(
        "SELECT * FROM account_bindings WHERE platform = ? ORDER BY updated_at DESC, id DESC LIMIT 1",
        (platform,),
    ).fetchone()
    return _row_to_binding(row) if row else None
