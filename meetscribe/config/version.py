"""Version string reported by the health endpoint."""

from importlib import metadata
from pathlib import Path

VERSION_FILE = Path('VERSION')


def get_version() -> str:
    # A VERSION file next to the working directory wins (container images)
    if VERSION_FILE.is_file():
        return VERSION_FILE.read_text().strip()
    try:
        return metadata.version('meetscribe')
    except metadata.PackageNotFoundError:
        return 'unknown'
