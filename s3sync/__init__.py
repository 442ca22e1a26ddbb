"""s3sync: mirror a local folder into an S3 bucket as files settle.

Watches a directory for changes, waits for each matching file to stop
changing, then uploads it and optionally removes the local copy.
"""

__version__ = "1.0.0"
__app_name__ = "s3sync"
