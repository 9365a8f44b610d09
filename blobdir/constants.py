"""Module defining various global constants."""

# blobdir version
VERSION = "1.0.0"

# Version of the blob storage REST protocol that requests are signed for.
STORAGE_API_VERSION = "2014-02-14"

# Account key that disables request signing, for use against a local emulator.
EMULATOR_KEY = "UseDevelopmentStorage=true"

# Base address of the blob service, formatted with the account name.
ENDPOINT_TEMPLATE = "https://{account}.blob.core.windows.net/"

# Prefix of custom metadata headers, followed by the metadata field name.
METADATA_PREFIX = "x-ms-meta-"

# Metadata fields holding the logical (uncompressed) length and modification time.
LENGTH_METADATA = METADATA_PREFIX + "cachedlength"
MODIFIED_METADATA = METADATA_PREFIX + "cachedlastmodified"

# Default container name if none is configured.
DEFAULT_CONTAINER = "lucene"

# Lease timing in seconds. Leases must be renewed well before they expire.
LEASE_DURATION = 60
RENEW_INTERVAL = 30

# Cached copies whose timestamp differs from the remote one by at most this many
# seconds are still considered fresh.
FRESHNESS_TOLERANCE = 1.0

# Size of the reads used when inflating compressed blobs into the cache.
INFLATE_CHUNK_SIZE = 65535

# Index file kinds that are worth compressing: compound segments, stored fields,
# frequencies, term dictionaries, norms, term vectors and proximity data.
COMPRESSIBLE_EXTENSIONS = frozenset(
    {
        ".cfs",
        ".fdt",
        ".fdx",
        ".frq",
        ".tis",
        ".tii",
        ".nrm",
        ".tvx",
        ".tvd",
        ".tvf",
        ".prx",
    }
)

# Special exit code for when the command line tool fails.
BLOBDIR_ERROR_CODE = 254
