"""User directory -- read-only identity lookups for participants and recipients."""
