"""mailhub - mailbox sync, conversation threading and business-record linking.

Pulls messages from a mailbox provider, reconstructs conversation threads,
serves them through keyset pagination and links threads or single messages
to orders, cases, returns and repairs.
"""

__version__ = "0.3.0"
