"""
blobdir exposes a blob storage container as a directory of files for a search index.

Files are read and written through a local on-disk cache, optionally stored compressed,
and protected by distributed locks that are built on blob leases. The entry point is
blobdir.directory.BlobDirectory.
"""
