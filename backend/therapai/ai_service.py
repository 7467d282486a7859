import re
import json
import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional, Tuple

import anthropic
import httpx
import openai
from google import generativeai as genai
from google.api_core import exceptions as google_exceptions

from therapai import config

logger = logging.getLogger(__name__)

GEMINI_REST_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
GEMINI_STREAM_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:streamGenerateContent"

GENERATION_CONFIG = {
    "temperature": 0.7,
    "top_k": 40,
    "top_p": 0.95,
    "max_output_tokens": 1024,
}

SYSTEM_PROMPTS = {
    "en": """You are TherapAI, a warm and empathetic AI therapist who specializes in helping startup founders and entrepreneurs. You provide supportive, evidence-based mental health guidance while maintaining appropriate boundaries.

Guidelines:
- Be empathetic and non-judgmental
- Use active listening and ask clarifying questions when helpful
- Offer coping strategies such as CBT techniques and mindfulness
- Encourage professional help for serious issues
- Never provide medical diagnoses or prescriptions
- Talk like a real person: no markdown, bullet points or numbered lists
- Keep responses conversational and concise

You understand the unique pressures of building a business and the emotional rollercoaster of entrepreneurship. You are here to support, not replace professional therapy.""",

    "es": """Eres TherapAI, un terapeuta de IA cálido y empático especializado en ayudar a fundadores de startups y emprendedores. Proporcionas orientación de salud mental de apoyo y basada en evidencia, manteniendo límites apropiados.

Pautas:
- Sé empático y sin prejuicios
- Utiliza la escucha activa y haz preguntas aclaratorias cuando sea útil
- Ofrece estrategias de afrontamiento como técnicas de TCC y mindfulness
- Fomenta la ayuda profesional para problemas serios
- Nunca proporciones diagnósticos médicos o prescripciones
- Habla como una persona real: sin markdown ni listas
- Mantén las respuestas conversacionales y concisas

Estás aquí para apoyar, no para reemplazar la terapia profesional.""",

    "fr": """Vous êtes TherapAI, un thérapeute IA chaleureux et empathique spécialisé dans l'accompagnement des fondateurs de startups et des entrepreneurs. Vous fournissez des conseils de santé mentale fondés sur des preuves tout en maintenant des limites appropriées.

Directives:
- Soyez empathique et sans jugement
- Pratiquez l'écoute active et posez des questions clarifiantes quand c'est utile
- Proposez des stratégies d'adaptation comme la TCC et la pleine conscience
- Encouragez l'aide professionnelle pour les problèmes sérieux
- Ne fournissez jamais de diagnostics médicaux ou de prescriptions
- Parlez comme une vraie personne : pas de markdown ni de listes
- Gardez des réponses conversationnelles et concises

Vous êtes là pour soutenir, pas pour remplacer la thérapie professionnelle.""",
}

ANALYSIS_SYSTEM_PROMPT = "You analyse therapy conversations and answer with strict JSON only."

DEFAULT_ANALYSIS = {
    "mood_score": 5,
    "sentiment": "neutral",
    "themes": ["general discussion"],
    "progress": "Session completed",
    "recommendations": ["Continue regular sessions"],
}

UPSTREAM_ERROR_MESSAGES = {
    400: "Invalid API key or request. Please check your Gemini API key in Settings.",
    401: "API key rejected. Please check your API key in Settings.",
    403: "API key access denied. Please ensure your API key has the correct permissions.",
    429: "The AI service is receiving too many requests. Please try again in a moment.",
}
GENERIC_UPSTREAM_MESSAGE = "Failed to generate AI response"

class AIServiceError(Exception):
    """The upstream generative model failed"""

    def __init__(self, message: str = GENERIC_UPSTREAM_MESSAGE, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.upstream_status = upstream_status

def upstream_error(status: Optional[int]) -> AIServiceError:
    return AIServiceError(UPSTREAM_ERROR_MESSAGES.get(status, GENERIC_UPSTREAM_MESSAGE), status)

def _status_of(error: Exception) -> Optional[int]:
    # openai/anthropic expose status_code, google api_core exposes code
    for attr in ("status_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None

def get_system_prompt(language: str = "en") -> str:
    return SYSTEM_PROMPTS.get(language, SYSTEM_PROMPTS["en"])

def build_conversation(history: List[Dict[str, str]], message: str) -> List[Dict[str, str]]:
    """History turns followed by the new user message, as role/content dicts"""
    turns = [
        {"role": "user" if turn["role"] == "user" else "assistant", "content": turn["content"]}
        for turn in history
        if turn.get("content")
    ]
    turns.append({"role": "user", "content": message})
    return turns

class ResponseParser:
    @staticmethod
    def parse_analysis(content: str) -> Dict:
        text = re.sub(r"```(?:json)?", "", content or "").strip()
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if match:
            text = match.group(0)
        try:
            parsed = json.loads(text)
        except ValueError:
            logger.warning("Conversation analysis was not valid JSON, using default analysis")
            return dict(DEFAULT_ANALYSIS)
        if not isinstance(parsed, dict):
            return dict(DEFAULT_ANALYSIS)
        return {**DEFAULT_ANALYSIS, **parsed}

class AIService:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport
        self.claude_client = anthropic.Anthropic(api_key=config.ANTHROPIC_API_KEY) if config.ANTHROPIC_API_KEY else None
        if not self.claude_client: logger.warning("Anthropic API key not available.")
        self.openai_client = openai.OpenAI(api_key=config.OPENAI_API_KEY) if config.OPENAI_API_KEY else None
        if not self.openai_client: logger.warning("OpenAI API key not available.")
        self.gemini_ready = False
        if config.GEMINI_API_KEY:
            try:
                genai.configure(api_key=config.GEMINI_API_KEY)
                self.gemini_ready = True
            except Exception as e: logger.error(f"Failed to configure Gemini: {e}")
        if not self.gemini_ready: logger.warning("Gemini API key not available.")

    def get_fallback_order(self, preference: Optional[str] = None) -> List[str]:
        preference = preference or config.AI_MODEL_PREFERENCE
        if preference not in config.DEFAULT_FALLBACK_ORDER:
            logger.warning(f"Unknown AI model preference '{preference}'. Using default order.")
            return list(config.DEFAULT_FALLBACK_ORDER)
        return [preference] + [m for m in config.DEFAULT_FALLBACK_ORDER if m != preference]

    async def _generate_with_gemini(self, system_prompt: str, turns: List[Dict[str, str]]) -> str:
        if not self.gemini_ready: raise ConnectionError("Gemini model not available.")
        logger.info("Calling Gemini API")
        model = genai.GenerativeModel(config.GEMINI_MODEL, system_instruction=system_prompt)
        contents = [
            {"role": "user" if t["role"] == "user" else "model", "parts": [t["content"]]}
            for t in turns
        ]
        response = await asyncio.wait_for(
            asyncio.to_thread(model.generate_content, contents, generation_config=GENERATION_CONFIG),
            timeout=config.AI_TIMEOUT_SECONDS,
        )
        content = response.text if hasattr(response, 'text') else ''
        if not content: raise ValueError("Gemini API returned empty content.")
        return content

    async def _generate_with_openai(self, system_prompt: str, turns: List[Dict[str, str]]) -> str:
        if not self.openai_client: raise ConnectionError("OpenAI client not available.")
        logger.info("Calling OpenAI API")
        messages = [{"role": "system", "content": system_prompt}] + turns
        response = await asyncio.wait_for(
            asyncio.to_thread(self.openai_client.chat.completions.create, model="gpt-4o-mini", messages=messages, max_tokens=1024, temperature=0.7),
            timeout=config.AI_TIMEOUT_SECONDS,
        )
        content = response.choices[0].message.content
        if content is None: raise ValueError("OpenAI API returned None content.")
        return content

    async def _generate_with_claude(self, system_prompt: str, turns: List[Dict[str, str]]) -> str:
        if not self.claude_client: raise ConnectionError("Claude client not available.")
        logger.info("Calling Claude API")
        response = await asyncio.wait_for(
            asyncio.to_thread(self.claude_client.messages.create, model="claude-3-5-haiku-latest", max_tokens=1024, temperature=0.7, system=system_prompt, messages=turns),
            timeout=config.AI_TIMEOUT_SECONDS,
        )
        return response.content[0].text

    async def _generate_with_gemini_key(self, api_key: str, system_prompt: str, turns: List[Dict[str, str]]) -> str:
        """Gemini REST call with a key the user supplied"""
        body = self._gemini_rest_body(system_prompt, turns)
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=config.AI_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    GEMINI_REST_URL.format(model=config.GEMINI_MODEL),
                    params={"key": api_key},
                    json=body,
                )
        except httpx.HTTPError as e:
            logger.error(f"Gemini request with user key failed: {e}")
            raise AIServiceError()

        if response.status_code != 200:
            logger.error(f"Gemini API error {response.status_code}: {response.text[:500]}")
            raise upstream_error(response.status_code)

        data = response.json()
        try:
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            logger.error(f"No valid response from Gemini API: {str(data)[:500]}")
            raise AIServiceError("No response generated from AI")

    def _gemini_rest_body(self, system_prompt: str, turns: List[Dict[str, str]]) -> Dict:
        return {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [
                {"role": "user" if t["role"] == "user" else "model", "parts": [{"text": t["content"]}]}
                for t in turns
            ],
            "generationConfig": {
                "temperature": GENERATION_CONFIG["temperature"],
                "topK": GENERATION_CONFIG["top_k"],
                "topP": GENERATION_CONFIG["top_p"],
                "maxOutputTokens": GENERATION_CONFIG["max_output_tokens"],
            },
        }

    async def _stream_with_gemini(self, system_prompt: str, turns: List[Dict[str, str]]) -> AsyncIterator[str]:
        logger.info("Streaming from Gemini API")
        model = genai.GenerativeModel(config.GEMINI_MODEL, system_instruction=system_prompt)
        contents = [
            {"role": "user" if t["role"] == "user" else "model", "parts": [t["content"]]}
            for t in turns
        ]
        response = await model.generate_content_async(contents, generation_config=GENERATION_CONFIG, stream=True)
        async for chunk in response:
            if chunk.text:
                yield chunk.text

    async def _stream_with_gemini_key(self, api_key: str, system_prompt: str, turns: List[Dict[str, str]]) -> AsyncIterator[str]:
        """Server-sent Gemini stream with a key the user supplied"""
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=config.AI_TIMEOUT_SECONDS) as client:
                async with client.stream(
                    "POST",
                    GEMINI_STREAM_URL.format(model=config.GEMINI_MODEL),
                    params={"alt": "sse", "key": api_key},
                    json=self._gemini_rest_body(system_prompt, turns),
                ) as response:
                    if response.status_code != 200:
                        await response.aread()
                        logger.error(f"Gemini API error {response.status_code}: {response.text[:500]}")
                        raise upstream_error(response.status_code)

                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        try:
                            data = json.loads(line[len("data:"):])
                            parts = data["candidates"][0]["content"]["parts"]
                        except (ValueError, KeyError, IndexError, TypeError):
                            logger.warning(f"Skipping unreadable Gemini stream event: {line[:200]}")
                            continue
                        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
                        if text:
                            yield text
        except httpx.HTTPError as e:
            logger.error(f"Gemini stream with user key failed: {e}")
            raise AIServiceError()

    async def stream_chat(
        self,
        message: str,
        history: Optional[List[Dict[str, str]]] = None,
        language: str = "en",
        own_gemini_key: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Reply text in chunks as the model produces it.

        Only Gemini streams. When it is unavailable, or fails before the first
        chunk, the full reply from the fallback chain is sent as one chunk.
        Failures raise AIServiceError.
        """
        system_prompt = get_system_prompt(language)
        turns = build_conversation(history or [], message)

        if own_gemini_key:
            async for chunk in self._stream_with_gemini_key(own_gemini_key, system_prompt, turns):
                yield chunk
            return

        if self.gemini_ready:
            started = False
            try:
                async for chunk in self._stream_with_gemini(system_prompt, turns):
                    started = True
                    yield chunk
                if started:
                    return
                logger.warning("Gemini stream was empty, falling back")
            except (google_exceptions.GoogleAPICallError, ValueError) as e:
                if started:
                    logger.error(f"Gemini stream broke off: {e}")
                    raise upstream_error(_status_of(e))
                logger.warning(f"Gemini stream failed, falling back: {e}")

        content, _ = await self.complete(system_prompt, turns)
        yield content

    async def complete(
        self,
        system_prompt: str,
        turns: List[Dict[str, str]],
        own_gemini_key: Optional[str] = None,
    ) -> Tuple[str, str]:
        """Generate a reply to `turns`. Returns (text, provider)."""
        if own_gemini_key:
            return await self._generate_with_gemini_key(own_gemini_key, system_prompt, turns), "gemini"

        last_error: Optional[Exception] = None
        for model_name in self.get_fallback_order():
            try:
                logger.info(f"Attempting completion with {model_name}")
                if model_name == "gemini": content = await self._generate_with_gemini(system_prompt, turns)
                elif model_name == "openai": content = await self._generate_with_openai(system_prompt, turns)
                elif model_name == "claude": content = await self._generate_with_claude(system_prompt, turns)
                else: logger.warning(f"Unknown model {model_name}. Skipping."); continue
                return content, model_name
            except ConnectionError as e: logger.warning(f"{model_name} client not available: {e}"); continue
            except google_exceptions.GoogleAPICallError as e: logger.error(f"Gemini API error: {e}"); last_error = e
            except Exception as e: logger.error(f"Error with {model_name}: {type(e).__name__} - {e}"); last_error = e

        if last_error is None:
            raise AIServiceError("No AI provider is configured")
        logger.error(f"All AI providers failed. Last error: {last_error}")
        raise upstream_error(_status_of(last_error))

    async def chat(
        self,
        message: str,
        history: Optional[List[Dict[str, str]]] = None,
        language: str = "en",
        own_gemini_key: Optional[str] = None,
    ) -> Tuple[str, str]:
        turns = build_conversation(history or [], message)
        return await self.complete(get_system_prompt(language), turns, own_gemini_key)

    async def analyze_conversation(
        self,
        history: List[Dict[str, str]],
        own_gemini_key: Optional[str] = None,
    ) -> Dict:
        conversation_text = "\n".join(f"{turn['role']}: {turn['content']}" for turn in history)
        prompt = f"""Analyze this therapy conversation and provide insights:

{conversation_text}

Please provide:
1. Overall mood/sentiment (scale 1-10)
2. Key emotional themes
3. Progress indicators
4. Recommendations for next session

Format as JSON:
{{
  "mood_score": number,
  "sentiment": "positive/neutral/negative",
  "themes": ["theme1", "theme2"],
  "progress": "description",
  "recommendations": ["rec1", "rec2"]
}}"""
        content, _ = await self.complete(ANALYSIS_SYSTEM_PROMPT, [{"role": "user", "content": prompt}], own_gemini_key)
        return ResponseParser.parse_analysis(content)

ai_service = AIService()

def get_ai_service() -> AIService:
    return ai_service
