"""Direct messaging -- canonical two-party conversations and message log.

Provides ChatService for conversation and message operations, ChatRepository
for persistence with keyset pagination, and RealtimeTokenIssuer for hosted
realtime channel credentials.
"""
