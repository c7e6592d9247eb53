import argparse
import logging
import logging.handlers
import os
import shutil
import sys
import threading

from dotenv import load_dotenv

load_dotenv()

from ytrelay.ai_service import AIServiceManager  # noqa: E402
from ytrelay.config import AppConfig, load_config  # noqa: E402
from ytrelay.cookies import write_cookie_file  # noqa: E402
from ytrelay.credentials import CredentialCipher  # noqa: E402
from ytrelay.db import get_connection, save_binding, set_primary_binding  # noqa: E402
from ytrelay.intake import load_subtitle_file, submit_video  # noqa: E402
from ytrelay.models import AccountBinding  # noqa: E402
from ytrelay.network import COOKIE_FILENAME  # noqa: E402
from ytrelay.pipeline import process_video, run_intake_loop  # noqa: E402
from ytrelay.upload_scheduler import UploadScheduler  # noqa: E402

LOCK_FILE = os.path.join("data", "ytrelay.lock")

log = logging.getLogger(__name__)


def setup_logging(log_file: str | None = None, verbose: bool = False):
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file, maxBytes=10 * 1024 * 1024, backupCount=3
            )
        )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _try_create_lock() -> bool:
    """Attempt atomic lock file creation. Returns True if created."""
    try:
        fd = os.open(LOCK_FILE, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        os.write(fd, str(os.getpid()).encode())
        os.close(fd)
        return True
    except FileExistsError:
        return False


def acquire_lock() -> bool:
    """PID-file based lock with atomic creation. Returns True if lock acquired."""
    os.makedirs(os.path.dirname(LOCK_FILE), exist_ok=True)
    if _try_create_lock():
        return True
    try:
        with open(LOCK_FILE) as f:
            old_pid = int(f.read().strip())
        os.kill(old_pid, 0)
        return False
    except (ValueError, OSError) as e:
        log.warning("Removed stale/corrupt lock file: %s", e)
    try:
        os.remove(LOCK_FILE)
    except OSError:
        return False
    return _try_create_lock()


def release_lock():
    try:
        os.remove(LOCK_FILE)
    except OSError:
        pass


def cmd_submit(config: AppConfig, args) -> int:
    subtitles = load_subtitle_file(args.subtitles) if args.subtitles else None
    conn = get_connection(config.pipeline.db_path)
    try:
        record = submit_video(conn, args.url, args.title, args.description, subtitles, args.playlist)
    finally:
        conn.close()
    print(record.video_id)
    return 0


def cmd_process(config: AppConfig, args) -> int:
    conn = get_connection(config.pipeline.db_path)
    try:
        ok = process_video(conn, config, args.video_id, AIServiceManager(config.ai))
    finally:
        conn.close()
    return 0 if ok else 1


def cmd_upload_tick(config: AppConfig, args) -> int:
    conn = get_connection(config.pipeline.db_path)
    try:
        result = UploadScheduler(conn, config).tick()
    finally:
        conn.close()
    return 0 if result["failed"] == 0 else 1


def cmd_bind(config: AppConfig, args) -> int:
    with open(args.cookies_file, encoding="utf-8") as f:
        raw = f.read()
    binding = AccountBinding(
        user_id=args.user_id, platform=args.platform, platform_uid=args.uid, username=args.username, cookies=raw,
    )
    conn = get_connection(config.pipeline.db_path)
    try:
        save_binding(conn, CredentialCipher.from_env().seal_binding(binding))
        if args.primary and not set_primary_binding(conn, args.user_id, args.platform, args.uid):
            log.error("Binding %s/%s not found after save", args.platform, args.uid)
            return 1
    finally:
        conn.close()
    if args.platform == "youtube":
        path = write_cookie_file(raw, config.pipeline.cookies_dir)
        shutil.copyfile(path, os.path.join(config.pipeline.config_dir, COOKIE_FILENAME))
    log.info("Bound %s account %s for %s", args.platform, args.uid, args.user_id)
    return 0


def cmd_run(config: AppConfig, args) -> int:
    if not acquire_lock():
        log.error("ytrelay is already running (lockfile: %s). Exiting.", LOCK_FILE)
        return 1
    stop_event = threading.Event()
    # sqlite connections are per-thread
    intake_conn = get_connection(config.pipeline.db_path)
    upload_conn = get_connection(config.pipeline.db_path)
    threads = [
        threading.Thread(
            target=run_intake_loop,
            args=(intake_conn, config, AIServiceManager(config.ai), stop_event),
            name="intake", daemon=True,
        ),
        threading.Thread(
            target=UploadScheduler(upload_conn, config).run_forever,
            args=(stop_event,),
            name="upload-scheduler", daemon=True,
        ),
    ]
    try:
        for t in threads:
            t.start()
        log.info("ytrelay running (intake every %ds, uploads every %ds)",
                 config.pipeline.intake_poll_seconds, config.scheduler.interval_seconds)
        while any(t.is_alive() for t in threads):
            for t in threads:
                t.join(timeout=1)
    except KeyboardInterrupt:
        log.info("Stopping...")
        stop_event.set()
        for t in threads:
            t.join(timeout=30)
    finally:
        intake_conn.close()
        upload_conn.close()
        release_lock()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Republish YouTube videos to Bilibili")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("submit", help="Queue a video for processing")
    p.add_argument("url")
    p.add_argument("--title", default="")
    p.add_argument("--description", default="")
    p.add_argument("--subtitles", help="JSON file of [{start, duration, text}]")
    p.add_argument("--playlist")
    p.set_defaults(func=cmd_submit)

    p = sub.add_parser("process", help="Run the processing chain for one video")
    p.add_argument("video_id")
    p.set_defaults(func=cmd_process)

    p = sub.add_parser("upload-tick", help="Run one upload scheduler pass")
    p.set_defaults(func=cmd_upload_tick)

    p = sub.add_parser("bind", help="Store account cookies (encrypted)")
    p.add_argument("--platform", choices=["bilibili", "youtube"], required=True)
    p.add_argument("--uid", required=True)
    p.add_argument("--user-id", default="system")
    p.add_argument("--username", default="")
    p.add_argument("--cookies-file", required=True, help="JSON cookie export or a Cookie header line")
    p.add_argument("--primary", action="store_true")
    p.set_defaults(func=cmd_bind)

    p = sub.add_parser("run", help="Run the intake loop and upload scheduler")
    p.set_defaults(func=cmd_run)

    args = parser.parse_args()
    config = load_config(args.config)
    setup_logging(config.pipeline.log_file, args.verbose)
    sys.exit(args.func(config, args))


if __name__ == "__main__":
    main()
