from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .config import ASSISTANT_TIMEOUT, GEMINI_API_KEY, GEMINI_MODEL
from .db import Database
from .errors import InvalidInput
from . import missions

log = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
SYSTEM_INSTRUCTION = (
    "You are Picto, a helpful and slightly quirky cat assistant for a game called "
    "PictoCat. Your personality is friendly, curious, and you love cat puns. Keep "
    "your answers concise and fun. You are talking to a player of the game. You can "
    "give tips, tell jokes, or just chat. The game involves collecting cat pictures, "
    "assigning them to phrases, and playing minigames."
)
APOLOGY = "¡Miau! Picto se ha quedado dormido. Inténtalo de nuevo en un momento."
ROLES = ("user", "model")
MAX_HISTORY = 40


class PictoAssistant:
    def __init__(
        self,
        api_key: str = GEMINI_API_KEY,
        model: str = GEMINI_MODEL,
        timeout: float = ASSISTANT_TIMEOUT,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def build_payload(self, history: List[Dict[str, str]]) -> Dict[str, Any]:
        return {
            "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
            "contents": [
                {"role": message["role"], "parts": [{"text": message["text"]}]}
                for message in history[-MAX_HISTORY:]
            ],
        }

    @staticmethod
    def extract_text(body: Any) -> Optional[str]:
        try:
            parts = body["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            return None
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict)).strip()
        return text or None

    async def reply(self, history: List[Dict[str, str]]) -> str:
        if not self.api_key:
            log.warning("assistant called without an api key")
            return APOLOGY
        url = GEMINI_URL.format(model=self.model)
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    url,
                    params={"key": self.api_key},
                    json=self.build_payload(history),
                ) as resp:
                    if resp.status != 200:
                        log.warning("assistant http %s: %s", resp.status, await resp.text())
                        return APOLOGY
                    body = await resp.json()
        except Exception as exc:
            log.warning("assistant request failed: %s", exc)
            return APOLOGY
        text = self.extract_text(body)
        if text is None:
            log.warning("assistant returned no text")
            return APOLOGY
        return text


def validate_history(history: Any) -> List[Dict[str, str]]:
    if not isinstance(history, list) or not history:
        raise InvalidInput("Chat history is required.")
    cleaned = []
    for message in history:
        if (
            not isinstance(message, dict)
            or message.get("role") not in ROLES
            or not isinstance(message.get("text"), str)
        ):
            raise InvalidInput("Invalid chat history format.")
        cleaned.append({"role": message["role"], "text": message["text"]})
    if cleaned[-1]["role"] != "user":
        raise InvalidInput("Invalid chat history format.")
    return cleaned


async def chat(
    db: Database, assistant: PictoAssistant, user_id: str, history: Any
) -> str:
    cleaned = validate_history(history)
    # first message of a conversation counts for the daily mission
    if len(cleaned) == 1:
        await missions.record_activity(db, user_id, "CHAT_WITH_PICTO")
    return await assistant.reply(cleaned)
