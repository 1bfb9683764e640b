"""vdctl — virtual display provisioning and per-session mode control."""

__version__ = "0.1.0"
