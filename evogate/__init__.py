"""evogate - in-process WhatsApp gateway with an Evolution-style REST surface."""

__version__ = "0.1.0"
__logo__ = "📱"
