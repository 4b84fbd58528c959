"""
Identity for the portal front-end.

- Local accounts (email + bcrypt password) and OAuth 2.0 providers described as data.
- Server-side sessions; the cookie carries only a signed session id.
- Sign-in providers establish the Principal; authorize providers link API credentials to it.
"""
