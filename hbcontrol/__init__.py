"""Homebridge control bridge: HAP discovery, entity control, one-shot jobs and guarded self-healing."""
