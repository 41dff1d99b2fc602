"""Version information for NetCam."""

APP_VERSION = "0.4.0"
