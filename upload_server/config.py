"""Configuration settings for the Upload Server."""
import os

# Directory paths
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
LOG_DIR = os.getenv("LOG_DIR", "./logs")

# Streaming buffers
READ_BUFFER_SIZE = int(os.getenv("READ_BUFFER_SIZE", 50 * 1024))  # 50KB
WRITE_BUFFER_SIZE = int(os.getenv("WRITE_BUFFER_SIZE", 50 * 1024))  # 50KB
MAX_POOLED_BUFFERS = int(os.getenv("MAX_POOLED_BUFFERS", 64))

# Expiration
UPLOAD_EXPIRATION_SECONDS = int(os.getenv("UPLOAD_EXPIRATION_SECONDS", 24 * 60 * 60))  # 1 day

# Upload id constraints
MAX_ID_LENGTH = 200

# Protocol
TUS_VERSION = "1.0.0"
TUS_EXTENSIONS = "creation,creation-defer-length,expiration,checksum"
TUS_CHECKSUM_ALGORITHMS = "sha1,sha256,md5"
