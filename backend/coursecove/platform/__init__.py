"""Request-scoped platform concerns: sessions, authorization, rate limiting, errors, audit."""
