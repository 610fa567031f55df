ROOM_KEY = "room:{room_key}"  # room record (JSON of Room.to_dict())
SHARE_KEY = "share:{share_id}"  # anonymous share blob with expiry
BACKUP_KEY = "backup:rooms"  # full-table backup written by the backup loop

ROOM_PREFIX = "room:"
SHARE_PREFIX = "share:"

# **Example `room:{key}` record**
# - `key`, `members` (ordered), `host`
# - `code_by_language` = {language: content}
# - `chat_log` = [{identity, message, timestamp}]
# - `commit_log` = [{id, created_at, author, language, message, content}]
# - `created_at`, `last_active`
