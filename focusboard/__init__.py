# Focusboard: priority-slot task board with focus timers.
#
# Components:
#   schema.py   - Data model (Task, FocusSession, Tier, SessionState)
#   errors.py   - Error taxonomy mapped to HTTP status codes
#   store.py    - SQLite persistence for tasks (CRUD, toggle, reorder)
#   priority.py - Priority slot assignment/swap and the tier view on meta
#   focus.py    - Focus session state machine (single active session)
#   expiry.py   - Background sweeps: completed-task expiry, focus auto-stop
#   settings.py - Settings passthrough (single row)
#   config.py   - YAML configuration
#   client.py   - HTTP client, client-side deletion timers, optimistic board
