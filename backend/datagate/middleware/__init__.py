"""HTTP middleware: request ids, request logging, rate limiting, security headers."""
