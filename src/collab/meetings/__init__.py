"""Meeting scheduling -- lifecycle, overlap detection, roster, and video rooms.

Provides MeetingScheduler (create/update/remove with no double-booking per
organizer), ParticipantRoster, VideoWebhookHandler for provider callbacks,
and MeetingRepository for persistence.
"""
