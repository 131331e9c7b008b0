"""WhatsApp session capability and the queued facade over it."""
