"""Centralized constants for pal."""

# Distribution / ledger identity
DIST_NAME = "pal-cli"
APP_NAME = "pal"
DEFAULT_GATEWAY = "https://arweave.net"

# Ledger tags written by the publish workflow
TAG_VERSION = "Version"
TAG_SIGNER = "Signer-Address"
TAG_SHA256 = "SHA-256"

# Ledger query / download (seconds)
METADATA_TIMEOUT = 10
DOWNLOAD_TIMEOUT = 60
MAX_ATTEMPTS = 3
BACKOFF_BASE = 1.0
LOOKBACK_WINDOW = 10

# Staging: one full re-download on hash mismatch
HASH_ATTEMPTS = 2

# Update cadence
UPDATE_CHECK_INTERVAL_DAYS = 7
STARTUP_CHECK_TIMEOUT = 5

# Subprocess timeouts (seconds)
INSTALL_TIMEOUT = 300
VERSION_CHECK_TIMEOUT = 30

# Local state layout under the pal home directory
INSTALL_RECORD_FILE = "install.json"
STAGING_SUBDIR = ("updates", "staging")
BACKUP_SUBDIR = "backups"
LOCK_FILE = "update.lock"
