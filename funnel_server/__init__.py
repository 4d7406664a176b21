"""WhatsApp sales funnels driven by Kirvano checkout webhooks and the Evolution API."""

__version__ = "1.0.0"
