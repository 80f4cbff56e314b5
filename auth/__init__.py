"""auth/ -- Authentication and session-lifecycle package for Latchkey.

Layer rule: auth/ imports stdlib, third-party libraries, core.config and the
notice dataclasses in mailer.notices. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
