import logging
import os
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
ENV_FILE = Path(os.getenv("ORBITA_ENV_FILE") or ROOT / ".env")

NOISY_LOGGERS = ("waitress", "urllib3", "aiogram.event")


def parse_env_line(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    if stripped.startswith("export "):
        stripped = stripped[len("export "):].lstrip()

    key, sep, value = stripped.partition("=")
    key = key.strip()
    if sep != "=" or not key:
        return None

    value = value.strip()
    if value[:1] in {"'", '"'} and value.endswith(value[0]) and len(value) > 1:
        return key, value[1:-1]
    # unquoted values may carry a trailing comment
    value = value.split(" #", 1)[0].rstrip()
    return key, value


def load_dotenv(path: Path = ENV_FILE, override: bool = False) -> int:
    if not path.is_file():
        return 0

    loaded = 0
    for line in path.read_text(encoding="utf-8").splitlines():
        parsed = parse_env_line(line)
        if parsed is None:
            continue
        key, value = parsed
        if override or key not in os.environ:
            os.environ[key] = value
            loaded += 1
    return loaded


def configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = os.getenv("LOG_FILE")
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
