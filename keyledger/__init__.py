"""keyledger: license-key lifecycle manager behind a chat-platform bot."""

__version__ = "1.0.0"
