"""Scheduled rclone backups and verifications for a homelab."""

__version__ = "0.1.0"
