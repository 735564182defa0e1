"""Shared template configuration for web routes"""

from pathlib import Path

from fastapi.templating import Jinja2Templates

from webstarter import __version__

# Package directory (webstarter/)
PACKAGE_DIR = Path(__file__).parent.parent
TEMPLATES_DIR = PACKAGE_DIR / "templates"
STATIC_DIR = PACKAGE_DIR / "static"

# Create shared templates instance
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

templates.env.globals["app_name"] = "webstarter"
templates.env.globals["app_version"] = __version__

# Export for use in routes
__all__ = ["templates", "STATIC_DIR"]
