class BackupError(Exception):
    """Base class for fatal errors on the backup path."""
    pass
