"""Domain layer (pure logic).

- Keep race, pool and round lifecycle rules here.
- Avoid I/O: no HTTP sessions, no Redis, no scheduler.
- Time and randomness are passed in as arguments.
"""
