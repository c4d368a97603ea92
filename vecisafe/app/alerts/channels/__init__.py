"""
channels — Outbound transports.

    push — PushTransport.send(recipient_session_id, summary) → bool
    sms  — VerificationTransport.send_code(phone_number, code)

Transports are stateless apart from their HTTP client. Retry logic lives
in the fanout dispatcher.
"""
