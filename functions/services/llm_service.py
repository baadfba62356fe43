"""LLM service for Domux.

Provides LangChain/OpenAI integration for estimate generation.
"""

from typing import Dict, Any, Optional, List
import structlog
from langchain_openai import ChatOpenAI
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from config.settings import settings
from config.errors import DomuxError, ErrorCode

logger = structlog.get_logger()

JSON_INSTRUCTION = "IMPORTANT: You MUST respond with valid JSON only. No markdown, no explanation, just JSON."


class LLMService:
    """Service for LLM operations using LangChain.

    Provides a wrapper around ChatOpenAI with token tracking
    and error handling.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        api_key: Optional[str] = None
    ):
        """Initialize LLMService.

        Args:
            model: Model name (default from settings).
            temperature: Temperature (default from settings).
            api_key: OpenAI API key (default from settings).
        """
        self.model = model or settings.llm_model
        self.temperature = temperature if temperature is not None else settings.llm_temperature
        self.api_key = api_key or settings.openai_api_key

        self._client: Optional[ChatOpenAI] = None
        self._total_tokens_used = 0

    @property
    def client(self) -> ChatOpenAI:
        """Get LangChain ChatOpenAI client (lazy initialization)."""
        if self._client is None:
            self._client = ChatOpenAI(
                model=self.model,
                temperature=self.temperature,
                api_key=self.api_key
            )
        return self._client

    @property
    def total_tokens_used(self) -> int:
        """Get total tokens used across all calls."""
        return self._total_tokens_used

    async def generate(
        self,
        messages: List[BaseMessage],
        max_tokens: Optional[int] = None
    ) -> Dict[str, Any]:
        """Generate a response from the LLM.

        Args:
            messages: List of LangChain messages.
            max_tokens: Optional max tokens for response.

        Returns:
            Dict with content and token usage.

        Raises:
            DomuxError: If LLM call fails.
        """
        try:
            kwargs = {}
            if max_tokens:
                kwargs["max_tokens"] = max_tokens

            response = await self.client.ainvoke(messages, **kwargs)

        except Exception as e:
            error_msg = str(e)
            logger.error("llm_call_failed", model=self.model, error=error_msg)

            # Detect specific error types
            if "rate_limit" in error_msg.lower():
                raise DomuxError(
                    code=ErrorCode.LLM_RATE_LIMIT,
                    message="OpenAI rate limit exceeded",
                    details={"original_error": error_msg}
                )
            elif "context_length" in error_msg.lower() or "maximum context" in error_msg.lower():
                raise DomuxError(
                    code=ErrorCode.LLM_CONTEXT_TOO_LONG,
                    message="Input too long for model context",
                    details={"original_error": error_msg}
                )
            else:
                raise DomuxError(
                    code=ErrorCode.LLM_ERROR,
                    message=f"LLM generation failed: {error_msg}",
                    details={"original_error": error_msg}
                )

        # Track token usage if available
        tokens_used = 0
        metadata = getattr(response, "response_metadata", None)
        if isinstance(metadata, dict):
            usage = metadata.get("token_usage") or {}
            tokens_used = usage.get("total_tokens", 0)
            self._total_tokens_used += tokens_used

        content = response.content if isinstance(response.content, str) else str(response.content)

        logger.info(
            "llm_generated",
            model=self.model,
            tokens_used=tokens_used,
            content_length=len(content)
        )

        return {
            "content": content,
            "tokens_used": tokens_used
        }

    async def generate_with_system_prompt(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: Optional[int] = None
    ) -> Dict[str, Any]:
        """Generate a response with system prompt.

        Args:
            system_prompt: System prompt for context.
            user_message: User message/query.
            max_tokens: Optional max tokens for response.

        Returns:
            Dict with content and token usage.
        """
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_message)
        ]
        return await self.generate(messages, max_tokens)

    async def generate_with_image(
        self,
        system_prompt: str,
        user_message: str,
        image_base64: str,
        mime_type: str = "image/jpeg",
        max_tokens: Optional[int] = None
    ) -> Dict[str, Any]:
        """Generate a response from text plus one inline image.

        The image is sent as a data URL content part of the human message.
        """
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=[
                {"type": "text", "text": user_message},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{mime_type};base64,{image_base64}"}
                }
            ])
        ]
        return await self.generate(messages, max_tokens)

    async def generate_json(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: Optional[int] = None,
        image_base64: Optional[str] = None,
        mime_type: str = "image/jpeg"
    ) -> Dict[str, Any]:
        """Generate a JSON response.

        Adds JSON formatting instructions to the system prompt.

        Args:
            system_prompt: System prompt for context.
            user_message: User message/query.
            max_tokens: Optional max tokens for response.
            image_base64: Optional image to attach to the user message.
            mime_type: MIME type of the attached image.

        Returns:
            Dict with parsed JSON content and token usage.

        Raises:
            DomuxError: If response is not valid JSON.
        """
        import json

        json_prompt = f"{system_prompt}\n\n{JSON_INSTRUCTION}"

        if image_base64:
            result = await self.generate_with_image(
                json_prompt,
                user_message,
                image_base64,
                mime_type=mime_type,
                max_tokens=max_tokens
            )
        else:
            result = await self.generate_with_system_prompt(
                json_prompt,
                user_message,
                max_tokens
            )

        try:
            parsed = json.loads(strip_code_fences(result["content"]))
        except json.JSONDecodeError as e:
            logger.error("llm_invalid_json", model=self.model, error=str(e))
            raise DomuxError(
                code=ErrorCode.LLM_ERROR,
                message="LLM did not return valid JSON",
                details={
                    "parse_error": str(e),
                    "raw_content": result["content"][:500]
                }
            )

        return {
            "content": parsed,
            "tokens_used": result["tokens_used"]
        }


def strip_code_fences(content: str) -> str:
    """Remove a surrounding markdown code block, if any."""
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    if content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()
