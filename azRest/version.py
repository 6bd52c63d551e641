"""
Version information for azd rest
"""

# Overridden by release builds
VERSION = "0.0.0-dev"
BUILD_DATE = "unknown"
GIT_COMMIT = "unknown"

EXTENSION_ID = "jongio.azd.rest"
NAME = "azd rest"

USER_AGENT = f"azd-rest/{VERSION} (azd extension)"
