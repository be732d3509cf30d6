import requests

from ..errors import GraphAPIError
from ..logging_setup import log_event, scrub

VIDEO_MEDIA_TYPES = ("VIDEO", "REELS")

class GraphClient:
    """
    Thin wrapper over the Graph API write endpoints the queue uses.

    Every call carries a timeout. Any non-2xx answer, or a 2xx body without the
    expected id, raises GraphAPIError; transport failures raise it with http_status=None.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        reply_timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.reply_timeout = reply_timeout
        self.session = session or requests.Session()

    def _post(self, path: str, *, step: str, params: dict | None = None, json: dict | None = None, timeout: float | None = None) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            r = self.session.post(url, params=params, json=json, timeout=timeout or self.timeout)
        except requests.RequestException as e:
            # the message ends up in post_queue.error, so keep the token out of it
            message = scrub(f"{type(e).__name__}: {e}")
            log_event("graph_request_error", level="warning", step=step, error=message)
            raise GraphAPIError(message, step=step) from e

        try:
            body = r.json()
        except ValueError:
            body = {}

        if r.status_code >= 400 or "error" in body:
            err = GraphAPIError.from_response(r.status_code, body, headers=dict(r.headers), step=step)
            log_event(
                "graph_request_fail",
                level="warning",
                step=step,
                http_status=r.status_code,
                meta_error_code=err.code,
                meta_error_subcode=err.subcode,
                fbtrace_id=err.fbtrace_id,
            )
            raise err
        return body

    def _require_id(self, body: dict, step: str, *keys: str) -> str:
        for key in keys or ("id",):
            if body.get(key):
                return str(body[key])
        raise GraphAPIError(f"Graph API response for {step} carried no id", http_status=200, step=step)

    # --- two-step publish ---

    def create_media_container(self, ig_user_id: str, access_token: str, *, media_url: str, caption: str | None = None, media_type: str = "IMAGE") -> str:
        params = {"access_token": access_token}
        if caption is not None:
            params["caption"] = caption
        media_type = (media_type or "IMAGE").upper()
        if media_type in VIDEO_MEDIA_TYPES:
            params["video_url"] = media_url
            params["media_type"] = media_type
        else:
            params["image_url"] = media_url

        body = self._post(f"{ig_user_id}/media", step="media", params=params)
        return self._require_id(body, "media")

    def publish_media_container(self, ig_user_id: str, access_token: str, *, creation_id: str) -> str:
        body = self._post(
            f"{ig_user_id}/media_publish",
            step="media_publish",
            params={"creation_id": creation_id, "access_token": access_token},
        )
        return self._require_id(body, "media_publish")

    # --- single-step engagement writes ---

    def reply_to_comment(self, comment_id: str, access_token: str, *, message: str) -> str:
        body = self._post(
            f"{comment_id}/replies",
            step="comment_reply",
            params={"message": message, "access_token": access_token},
            timeout=self.reply_timeout,
        )
        return self._require_id(body, "comment_reply")

    def reply_to_conversation(self, conversation_id: str, access_token: str, *, message: str) -> str:
        body = self._post(
            f"{conversation_id}/messages",
            step="conversation_reply",
            params={"message": message, "access_token": access_token},
            timeout=self.reply_timeout,
        )
        return self._require_id(body, "conversation_reply", "message_id", "id")

    def send_direct_message(self, ig_user_id: str, access_token: str, *, recipient_id: str, message: str) -> str:
        body = self._post(
            f"{ig_user_id}/messages",
            step="send_dm",
            params={"access_token": access_token},
            json={"recipient": {"id": str(recipient_id)}, "message": {"text": message}},
            timeout=self.reply_timeout,
        )
        return self._require_id(body, "send_dm", "message_id", "id")
