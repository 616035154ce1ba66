"""parley - Encrypted real-time room messaging.

Usage:
    from parley import Parley

    async with Parley.in_memory() as parley:
        room = await parley.rooms.create_room("ws-1", "alice", "group", "design")
        await parley.participants.add_participants(room.room_id, "alice", ["bob"])

        bundle = await parley.encryption.initialize_user_encryption("alice", "passphrase")
        message = await parley.messages.send_message(room.room_id, "alice", ciphertext, nonce)

        async for m in await parley.messages.get_room_messages(room.room_id, "alice"):
            ...
"""

from parley._version import __version__
from parley.config import Settings
from parley.errors import ParleyError
from parley.models import Pagination
from parley.service import Parley

__all__ = [
    "__version__",
    "Parley",
    "Settings",
    "ParleyError",
    "Pagination",
]
