"""backupctl: restic backup orchestration for categorized S3 repositories."""

__version__ = "1.0.0"
