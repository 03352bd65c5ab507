"""Version history timeline and the notifications derived from it."""
