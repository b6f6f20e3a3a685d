"""
Shared constants used across the gateway.
"""

# Durable store layout
AUDIO_KEY_PREFIX = "audio/"
AUDIO_KEY_SUFFIX = ".mp3"
TRACKS_INDEX_KEY = "metadata/tracks.json"
GROUPS_INDEX_KEY = "metadata/groups.json"

# Encoding
AUDIO_CONTENT_TYPE = "audio/mpeg"
DEFAULT_AUDIO_BITRATE = 128  # kbps
DEFAULT_AUDIO_FORMAT = "mp3"
DEFAULT_AUDIO_CODEC = "libmp3lame"

# Origin
YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v={content_id}"
YDL_FORMAT_AUDIO = "bestaudio/best"
CONTENT_ID_LENGTH = 11
UNKNOWN_AUTHOR = "Unknown"

# Streaming
STREAM_CHUNK_SIZE = 64 * 1024  # bytes
STDERR_TAIL_LINES = 20
UPLOAD_PART_SIZE = 8 * 1024 * 1024  # S3 multipart minimum is 5MB

# Server defaults
DEFAULT_PORT = 3000
DEFAULT_SIGNED_URL_TTL = 3600  # seconds
DEFAULT_MAX_CONCURRENT_JOBS = 4
DEFAULT_JOB_TIMEOUT = 600  # seconds, matches the yt-dlp download timeout
DEFAULT_LOCAL_STORAGE_PATH = "~/.local/share/audio-stream-gateway"
METADATA_WAIT_SECONDS = 30  # after upload, before falling back to placeholders
