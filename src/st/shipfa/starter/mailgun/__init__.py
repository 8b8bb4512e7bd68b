"""
Mailgun Integration

- client.py: Messages API client used to send transactional email
- signature.py: Verification of inbound webhook signatures
"""
