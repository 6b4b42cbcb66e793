"""Shared learnings file carried across stories of a change.

Agents append discoveries, decisions and gotchas to a per-change markdown
file; every later prompt points at the file and includes its content. The
loop only creates the file, it never writes to it afterwards.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_LEARNINGS_DIR = Path("/tmp/ralphtool")

INITIAL_TEMPLATE = (
    "<!-- Shared Learnings File -->\n"
    "<!-- Record discoveries, decisions, and gotchas here for future stories -->\n"
    "\n"
)


def learnings_path(change_name: str, base_dir: Path = DEFAULT_LEARNINGS_DIR) -> Path:
    return base_dir / f"{change_name}-learnings.md"


def ensure_learnings_file(change_name: str, base_dir: Path = DEFAULT_LEARNINGS_DIR) -> Path:
    """Create the learnings file with its template if it does not exist.

    Existing content is never touched.

    Returns:
        Path to the learnings file
    """
    path = learnings_path(change_name, base_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        # "x" mode: never clobber a file another process created meanwhile
        with path.open("x", encoding="utf-8") as f:
            f.write(INITIAL_TEMPLATE)
        logger.debug(f"Created learnings file {path}")
    except FileExistsError:
        pass
    return path


def read_learnings(change_name: str, base_dir: Path = DEFAULT_LEARNINGS_DIR) -> str | None:
    """Read recorded learnings.

    Returns:
        The file content, or None if the file is missing or holds nothing
        beyond the initial template.
    """
    path = learnings_path(change_name, base_dir)
    if not path.exists():
        return None

    content = path.read_text(encoding="utf-8")
    recorded = content.removeprefix(INITIAL_TEMPLATE)
    if not recorded.strip():
        return None
    return content
