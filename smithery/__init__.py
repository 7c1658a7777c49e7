import importlib.resources
import sys
from pathlib import Path

from .cfgfile import load

__version__ = '1.0.0'

# ---------------------------------------------------------------------------
# Global Runtime Constants
# ---------------------------------------------------------------------------
# Determine the base folder. This is usually the folder of this very file but
# will be different if we run inside a bundle produced by PyInstaller.
if getattr(sys, '_MEIPASS', None):
    BASE_DIR = Path(getattr(sys, '_MEIPASS'))
    DEFAULT_CONFIG_FILE = BASE_DIR / "resources" / "defaultconfig.yaml"
else:
    with importlib.resources.as_file(
            importlib.resources.files("smithery.resources") / "defaultconfig.yaml") as f:
        DEFAULT_CONFIG_FILE = f

# Smithery will source all its default values from this configuration file.
# The user can override them with a dedicated file, command line arguments or
# environment variables.
DEFAULT_CONFIG, err = load(DEFAULT_CONFIG_FILE)
assert not err
