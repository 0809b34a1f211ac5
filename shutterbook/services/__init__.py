# Services package init
"""
Shutterbook Notifications — Services Layer
============================================

Service Inventory:
    - change_feed:        ChangeFeed contract, Postgres LISTEN/NOTIFY and
                          in-memory implementations
    - change_capture:     SQLAlchemy session hooks feeding the in-memory feed
    - notification_store: persistence and read-state rules
    - dispatch:           one helper per domain event and recipient
    - stream_session:     per-connection bridge from feed to event stream
    - session_registry:   process-wide list of open streams
    - sse:                event stream frame encoding
    - auth_service:       session token verification and user lookup
"""
