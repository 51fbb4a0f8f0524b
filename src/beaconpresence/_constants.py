"""Internal constants shared across the library."""

BEACON_KEY_SEPARATOR = ":"
DETECTION_EVENT_TYPE = "com.makeandbuild.detection"
DETECTIONS_LOGGER_NAME = "beaconpresence.detections"
USER_AGENT = "beaconpresence"
ACCESS_TOKEN_HEADER = "x-access-token"

AGENTS_PATH = "/api/agents"
BEACON_BY_KEY_PATH = "/api/beacons/uniquekey"
