"""mailer/ -- Outbound notification package for Latchkey.

Layer rule: mailer/ imports only stdlib, third-party libraries and core/.
auth/ imports mailer.notices (the data contract for what gets sent) but never
the queue or the transports; api/main.py wires the queue into AuthService.
"""
