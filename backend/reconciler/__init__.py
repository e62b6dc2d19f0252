"""
Match thread reconciliation service.
Mirrors each tracked match's lifecycle into chat threads and keeps their
RSVP views in sync with the store and the roster.
"""
