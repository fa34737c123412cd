from .notifications import deliver_message_job

__all__ = [
    "deliver_message_job",
]
