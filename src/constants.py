"""Project-wide constants shared by settings, persistence and migrations."""

DB_SCHEMA = "bugtracker"

BUGS_COLLECTION = "bugs"
COMMENTS_COLLECTION = "comments"

# Physical collection namespace: artifacts/{app_id}/public/data/{collection}
COLLECTION_PATH_TEMPLATE = "artifacts/{app_id}/public/data/{collection}"

DEFAULT_NOTIFY_CHANNEL = "bugtracker_documents"
