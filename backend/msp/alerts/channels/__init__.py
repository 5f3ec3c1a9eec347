"""
channels — Per-channel content builders and delivery transports.

    email_alert  build_employee_email / build_client_email / build_reminder_email,
                 EmailTransport
    sms_gateway  build_employee_sms / build_client_sms, SmsTransport
    realtime     RealtimeHub (admin WebSocket sessions)

Transports raise ``ChannelDeliveryError`` on failure. Whether a failure is
recorded, and how it is tallied, is decided by the dispatcher.
"""
