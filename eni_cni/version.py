"""Version information for the plugin.

Read from:
1. The VERSION file shipped next to the package (primary source)
2. Installed distribution metadata as fallback
"""

from importlib import metadata
from pathlib import Path

DISTRIBUTION = "vpc-eni-cni"


def get_version() -> str:
    """Get the plugin version.

    Returns:
        Version string (e.g., "0.1.0")
    """
    version_file = Path(__file__).parent / "VERSION"
    if version_file.exists():
        try:
            version = version_file.read_text().strip()
            if version:
                return version
        except OSError:
            pass

    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        pass

    return "0.0.0"


# Cache the version at import time
__version__ = get_version()
