"""
Vision Analysis Adapter

Turns a capture locator into a validated ScreenAnalysis by calling an
OpenAI-compatible vision model. Retries transient failures with exponential
backoff, waits on the shared rate limiter before every attempt, and never
raises across its boundary: callers always get a VisionResult.
"""

import base64
import json
import math
import mimetypes
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import asyncio
import httpx
import openai
from openai import AsyncOpenAI

from capture_analysis.config import settings
from capture_analysis.core.exceptions import (
    ConfigurationException, MalformedResponseException, PipelineException,
    RateLimitExceededException, ResourceUnavailableException,
    TransientCallFailure, VisionRequestRejectedException
)
from capture_analysis.core.job_budget import budget_paused
from capture_analysis.core.logging_config import get_logger
from capture_analysis.domain.analysis.schema import (
    ACTIVITY_CATEGORIES, ACTIVITY_TYPES, ATTENTION_LEVELS, COLOR_SCHEMES,
    CONTENT_TYPES, SCREEN_DENSITIES, TIME_OF_DAY_HINTS,
    HealthReport, ScreenAnalysis, UIElements, VisionResult
)
from capture_analysis.services.prometheus_metrics import get_metrics
from capture_analysis.services.rate_limiter import SlidingWindowRateLimiter

logger = get_logger(__name__)

SERVICE_NAME = "vision"
REQUIRED_FIELDS = ("app_name", "activity_category", "activity_type", "content_summary")
DEFAULT_IMAGE_MIME = "image/webp"


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first top-level JSON object embedded in free text.

    Braces are matched while skipping string literals, so explanatory prose
    or markdown fences around the object do not matter.
    """
    if not text:
        return None

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False

        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue

            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    try:
                        parsed = json.loads(text[start:index + 1])
                    except json.JSONDecodeError:
                        break
                    if isinstance(parsed, dict):
                        return parsed
                    break

        start = text.find("{", start + 1)

    return None


class VisionClient:
    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        image_root: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.rate_limiter = rate_limiter
        self.model = model or settings.vision_model
        self.temperature = settings.vision_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.vision_max_tokens
        self.timeout = timeout or settings.vision_request_timeout
        self.max_retries = settings.vision_max_retries if max_retries is None else max_retries
        self.base_delay = settings.vision_retry_base_delay if base_delay is None else base_delay
        self.image_root = Path(image_root or settings.image_root)
        self._sleep = sleep or asyncio.sleep
        self.metrics = get_metrics()

        if client is None:
            api_key = api_key or settings.vision_api_key
            if not api_key:
                raise ConfigurationException("vision_api_key", "VISION_API_KEY environment variable is required")

            # Retries are handled here, not by the SDK
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url or settings.vision_base_url,
                timeout=self.timeout,
                max_retries=0
            )
        self.client = client

        logger.info(
            "VisionClient initialized",
            model=self.model,
            max_retries=self.max_retries,
            base_delay=self.base_delay
        )

    async def analyze(self, locator: str) -> VisionResult:
        """Analyze one capture. Never raises."""
        started = time.monotonic()

        try:
            image_b64, mime_type = await self._load_image(locator)
        except ResourceUnavailableException as e:
            # Retrying cannot make a missing file appear
            logger.error(f"Capture image unavailable: {e.message}", locator=locator)
            self.metrics.record_error("resource_unavailable", "vision_client")
            return VisionResult(
                success=False,
                model=self.model,
                error=e.message,
                error_code=e.error_code,
                attempts=0,
                retries=0
            )

        last_error: Optional[PipelineException] = None
        attempts = 0

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self._backoff_delay(attempt, last_error)
                logger.info(
                    f"Retrying vision analysis in {delay:.1f}s",
                    locator=locator,
                    attempt=attempt + 1
                )
                self.metrics.record_retry()
                await self._sleep(delay)

            await self._acquire_slot()
            attempts = attempt + 1

            try:
                reply, tokens_used = await self._request_analysis(image_b64, mime_type, locator, attempts)
                analysis, missing = self._parse_response(reply)

                self.metrics.analysis_duration.observe(time.monotonic() - started)
                logger.info(
                    "Capture analysis completed",
                    locator=locator,
                    app_name=analysis.app_name,
                    activity_type=analysis.activity_type,
                    confidence=analysis.confidence,
                    attempt=attempts
                )
                return VisionResult(
                    success=True,
                    analysis=analysis,
                    model=self.model,
                    tokens_used=tokens_used,
                    attempts=attempts,
                    retries=attempt,
                    defaults_applied=bool(missing)
                )

            except PipelineException as e:
                last_error = e
            except Exception as e:
                last_error = TransientCallFailure(SERVICE_NAME, f"Unexpected vision client error: {e}")

            logger.error(
                f"Error analyzing capture: {last_error.message}",
                locator=locator,
                attempt=attempts,
                error_code=last_error.error_code
            )
            self.metrics.record_error(last_error.error_code.lower(), "vision_client")

            if not last_error.retryable:
                break

        if isinstance(last_error, MalformedResponseException):
            # Progress over correctness: a defaulted analysis beats a failed capture
            logger.warning(
                "No parseable JSON after retries, storing default analysis",
                locator=locator,
                attempts=attempts
            )
            return VisionResult(
                success=True,
                analysis=ScreenAnalysis(),
                model=self.model,
                attempts=attempts,
                retries=attempts - 1,
                defaults_applied=True
            )

        return VisionResult(
            success=False,
            model=self.model,
            error=last_error.message if last_error else "Analysis failed",
            error_code=last_error.error_code if last_error else None,
            attempts=attempts,
            retries=max(attempts - 1, 0)
        )

    async def check_health(self) -> HealthReport:
        """Minimal text-only probe of the vision endpoint."""
        try:
            await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": "Test"}],
                max_tokens=10
            )
            return HealthReport(healthy=True, model=self.model, detail="Vision API reachable")

        except Exception as e:
            logger.error(f"Vision API health check failed: {e}")
            return HealthReport(
                healthy=False,
                model=self.model,
                detail=f"Vision API unreachable ({type(e).__name__})"
            )

    async def close(self):
        await self.client.close()

    def _backoff_delay(self, attempt: int, last_error: Optional[PipelineException]) -> float:
        delay = self.base_delay * (2 ** (attempt - 1))
        if isinstance(last_error, RateLimitExceededException) and last_error.retry_after:
            delay = max(delay, float(last_error.retry_after))
        return delay

    async def _acquire_slot(self):
        waited_from = time.monotonic()
        with budget_paused():
            await self.rate_limiter.acquire()
        self.metrics.rate_limit_wait.observe(time.monotonic() - waited_from)
        self.metrics.rate_window_calls.set(self.rate_limiter.calls_in_window())

    async def _load_image(self, locator: str) -> Tuple[str, str]:
        if locator.startswith(("http://", "https://")):
            return await self._fetch_remote_image(locator)

        path = Path(locator[len("file://"):] if locator.startswith("file://") else locator)
        if not path.is_absolute():
            path = self.image_root / path

        if not path.is_file():
            raise ResourceUnavailableException(locator, f"file not found: {path}")

        try:
            data = path.read_bytes()
        except OSError as e:
            raise ResourceUnavailableException(locator, str(e))

        if not data:
            raise ResourceUnavailableException(locator, "file is empty")

        mime_type = mimetypes.guess_type(str(path))[0] or DEFAULT_IMAGE_MIME
        return base64.b64encode(data).decode("ascii"), mime_type

    async def _fetch_remote_image(self, locator: str) -> Tuple[str, str]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as http:
                response = await http.get(locator)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ResourceUnavailableException(locator, f"download failed: {e}")

        mime_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not mime_type.startswith("image/"):
            mime_type = mimetypes.guess_type(locator)[0] or DEFAULT_IMAGE_MIME
        return base64.b64encode(response.content).decode("ascii"), mime_type

    async def _request_analysis(self, image_b64: str, mime_type: str, locator: str, attempt: int) -> Tuple[str, int]:
        logger.info(
            "Sending capture to vision API",
            locator=locator,
            model=self.model,
            attempt=attempt
        )

        request_started = time.monotonic()
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": self._build_prompt()},
                            {
                                "type": "image_url",
                                "image_url": {"url": f"data:{mime_type};base64,{image_b64}"}
                            }
                        ]
                    }
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                top_p=1,
                stream=False
            )
        except openai.RateLimitError as e:
            self.metrics.record_vision_call(self.model, "failure", time.monotonic() - request_started)
            raise RateLimitExceededException(
                SERVICE_NAME,
                f"Vision API rate limit exceeded: {e}",
                retry_after=self._retry_after(e)
            )
        except openai.APIConnectionError as e:
            # Includes APITimeoutError
            self.metrics.record_vision_call(self.model, "failure", time.monotonic() - request_started)
            raise TransientCallFailure(SERVICE_NAME, f"Vision API connection error: {e}")
        except openai.APIStatusError as e:
            self.metrics.record_vision_call(self.model, "failure", time.monotonic() - request_started)
            if e.status_code >= 500 or e.status_code in (408, 409):
                raise TransientCallFailure(
                    SERVICE_NAME, f"Vision API error {e.status_code}: {e.message}", status_code=e.status_code
                )
            raise VisionRequestRejectedException(
                SERVICE_NAME, f"Vision API rejected request ({e.status_code}): {e.message}", status_code=e.status_code
            )

        self.metrics.record_vision_call(self.model, "success", time.monotonic() - request_started)

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise TransientCallFailure(SERVICE_NAME, "Empty response from vision API")

        usage = getattr(response, "usage", None)
        tokens_used = getattr(usage, "total_tokens", 0) or 0
        return content, tokens_used

    @staticmethod
    def _retry_after(error: openai.APIStatusError) -> Optional[int]:
        value = error.response.headers.get("retry-after") if error.response is not None else None
        try:
            return int(float(value)) if value else None
        except ValueError:
            return None

    def _parse_response(self, reply: str) -> Tuple[ScreenAnalysis, List[str]]:
        parsed = extract_json_object(reply)
        if parsed is None:
            raise MalformedResponseException("No JSON object found in vision response", raw_excerpt=reply)

        missing = [field for field in REQUIRED_FIELDS if not parsed.get(field)]
        if missing:
            logger.warning(f"Vision response missing required fields: {', '.join(missing)}")

        return self._validate_and_normalize_result(parsed), missing

    def _build_prompt(self) -> str:
        return """Analyze this screenshot in detail and extract comprehensive information in JSON format:

{
  "app_name": "Full name of the primary application (e.g., 'Google Chrome', 'Visual Studio Code', 'Microsoft Excel')",
  "window_title": "Complete window title or main content heading",
  "activity_category": "productive" | "neutral" | "distracting",
  "activity_type": "coding" | "browsing" | "video" | "gaming" | "document" | "social" | "communication" | "design" | "reading" | "meeting" | "other",
  "focus_score": 0-100,
  "content_summary": "Detailed description of what the user is doing (200-300 chars)",
  "detected_text": "Important visible text, headings, and content (up to 800 chars)",
  "detected_objects": ["UI elements like buttons, menus, tabs, toolbars, etc."],
  "ui_elements": {
    "tabs_count": 0,
    "windows_count": 1,
    "visible_notifications": false,
    "full_screen": false,
    "multiple_monitors": false
  },
  "website_url": "URL if browser (null otherwise)",
  "domain": "domain.com if applicable (null otherwise)",
  "programming_language": "Language if coding (null otherwise)",
  "file_type": "File extension/type being worked on (null if not applicable)",
  "distraction_indicators": ["social media", "entertainment", "games", "shopping", etc or empty array],
  "productivity_indicators": ["code", "documentation", "work apps", "research", etc or empty array],
  "visible_brands": ["Recognizable brand names or logos"],
  "color_scheme": "dark" | "light" | "mixed",
  "screen_density": "cluttered" | "organized" | "minimal",
  "user_action": "What action is the user likely performing (e.g., 'writing code', 'watching video')",
  "time_of_day_hint": "morning" | "afternoon" | "evening" | "night" | "unknown",
  "multitasking_detected": true/false,
  "attention_level": "high" | "medium" | "low",
  "content_type": "text" | "video" | "image" | "mixed" | "code" | "data",
  "sensitive_info_detected": false (true only if financial data, personal info visible),
  "keywords": ["5-10 relevant keywords from visible content"],
  "confidence": 0.0-1.0
}

Analysis Guidelines:
- Identify specific apps, not generic terms ("Slack" not "chat app")
- For coding: identify language, framework, and what is being built
- For browsing: get website name, domain, and content type
- Look for productivity vs distraction signals
- Estimate focus level from screen organization and content density
- ONLY respond with valid JSON, no markdown, no extra text"""

    def _validate_and_normalize_result(self, result: Dict[str, Any]) -> ScreenAnalysis:
        category = result.get("activity_category")
        if category not in ACTIVITY_CATEGORIES:
            if category is not None:
                logger.warning(f"Invalid activity_category '{category}', using 'neutral'")
            category = "neutral"

        activity_type = _as_str(result.get("activity_type"), "other").lower()
        if activity_type not in ACTIVITY_TYPES:
            activity_type = "other"

        ui = result.get("ui_elements")
        ui = ui if isinstance(ui, dict) else {}
        ui_elements = UIElements(
            tabs_count=_as_int(ui.get("tabs_count"), 0, 0, 1000),
            windows_count=_as_int(ui.get("windows_count"), 1, 0, 1000),
            visible_notifications=_as_bool(ui.get("visible_notifications")),
            full_screen=_as_bool(ui.get("full_screen")),
            multiple_monitors=_as_bool(ui.get("multiple_monitors"))
        )

        return ScreenAnalysis(
            app_name=_as_str(result.get("app_name"), "Unknown Application", 200),
            window_title=_as_str(result.get("window_title"), "", 500),
            activity_category=category,
            activity_type=activity_type,
            focus_score=_as_int(result.get("focus_score"), 50, 0, 100),
            content_summary=_as_str(result.get("content_summary"), "Screenshot analysis", 1000),
            detected_text=_as_str(result.get("detected_text"), "", 2000),
            detected_objects=_as_str_list(result.get("detected_objects")),
            ui_elements=ui_elements,
            website_url=_as_optional_str(result.get("website_url")),
            domain=_as_optional_str(result.get("domain")),
            programming_language=_as_optional_str(result.get("programming_language")),
            file_type=_as_optional_str(result.get("file_type")),
            distraction_indicators=_as_str_list(result.get("distraction_indicators")),
            productivity_indicators=_as_str_list(result.get("productivity_indicators")),
            visible_brands=_as_str_list(result.get("visible_brands")),
            color_scheme=_as_choice(result.get("color_scheme"), COLOR_SCHEMES, "unknown"),
            screen_density=_as_choice(result.get("screen_density"), SCREEN_DENSITIES, "organized"),
            user_action=_as_str(result.get("user_action"), "unknown", 200),
            time_of_day_hint=_as_choice(result.get("time_of_day_hint"), TIME_OF_DAY_HINTS, "unknown"),
            multitasking_detected=_as_bool(result.get("multitasking_detected")),
            attention_level=_as_choice(result.get("attention_level"), ATTENTION_LEVELS, "medium"),
            content_type=_as_choice(result.get("content_type"), CONTENT_TYPES, "mixed"),
            sensitive_info_detected=_as_bool(result.get("sensitive_info_detected")),
            keywords=_as_str_list(result.get("keywords"), limit=10),
            confidence=_as_float(result.get("confidence"), 0.5, 0.0, 1.0)
        )


def _as_str(value: Any, default: str, max_length: Optional[int] = None) -> str:
    if value is None or isinstance(value, (dict, list)):
        return default
    text = str(value).strip()
    if not text:
        return default
    return text[:max_length] if max_length else text


def _as_optional_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text if text and text.lower() not in ("null", "none", "n/a") else None


def _as_choice(value: Any, choices: tuple, default: str) -> str:
    text = _as_str(value, default).lower()
    return text if text in choices else default


def _as_int(value: Any, default: int, low: int, high: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return default
    return max(low, min(high, number))


def _as_float(value: Any, default: float, low: float, high: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(low, min(high, number))


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _as_str_list(value: Any, limit: int = 50) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value[:limit] if v is not None and str(v).strip()]
