import random
import time
import uuid


def generate_id() -> str:
    return str(uuid.uuid4())


def topic_id() -> str:
    return f"t-{int(time.time() * 1000)}-{random.randint(0, 999999):06d}"


def now_ms() -> int:
    return int(time.time() * 1000)
