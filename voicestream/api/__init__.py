# voicestream/api/__init__.py
# ============================
# API Layer — VoiceStream
#
# Responsibility:
#   - FastAPI session control endpoints
#   - WebSocket stream of pipeline events
#   - Segment hand-off to the storage webhook (SEGMENT_WEBHOOK_URL)
