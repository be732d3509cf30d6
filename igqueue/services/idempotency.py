import hashlib

def build_key(seed: str) -> str:
    """Stable 64-char hex key for a logical action."""
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()

def publish_seed(scheduled_post_id: str | None, image_url: str) -> str:
    """
    Seed for a publish_post action.
    Prefer the scheduler's own id; fall back to a short hash of the media URL
    when the caller does not track the post anywhere else.
    """
    if scheduled_post_id:
        return f"publish_post:{scheduled_post_id}"
    return f"publish_post:{build_key(image_url)[:16]}"
