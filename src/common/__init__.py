from common.compression import compress_if_needed, decompress_if_needed
from common.ids import generate_id, now_ms, topic_id
from common.jsonio import read_json_object, remove_file, write_json_atomic

__all__ = [
    "compress_if_needed",
    "decompress_if_needed",
    "generate_id",
    "now_ms",
    "topic_id",
    "read_json_object",
    "remove_file",
    "write_json_atomic",
]
