"""Per-room configuration: merge, projection and warnings."""

from room_gateway.rooms.resolver import RoomConfig, RoomConfigResolver, RoomsSnapshot

__all__ = ["RoomConfig", "RoomConfigResolver", "RoomsSnapshot"]
