from common.events import Event, EventEmitter
from common.ids import generate_id
from common.jsonio import atomic_write_json, load_json, load_model, save_model

__all__ = [
    "Event",
    "EventEmitter",
    "generate_id",
    "load_json",
    "atomic_write_json",
    "load_model",
    "save_model",
]
