import os
import time
from typing import Any, Dict, List, Optional

from openai import OpenAI, APITimeoutError, OpenAIError

from leetstack.notes.models import CardRecord
from leetstack.utils import get_logger, log_llm_call, UpstreamFailure

LOG = get_logger()

# Config
GENERATION_API_KEY = os.getenv('GENERATION_API_KEY') or os.getenv('OPENAI_API_KEY')
GENERATION_BASE_URL = os.getenv('GENERATION_BASE_URL') or None
GENERATION_MODEL = os.getenv('GENERATION_MODEL', 'gpt-4o-mini')
GENERATION_MAX_TOKENS = int(os.getenv('GENERATION_MAX_TOKENS', '8000'))
GENERATION_TEMPERATURE = float(os.getenv('GENERATION_TEMPERATURE', '0.2'))
GENERATION_TIMEOUT_SECONDS = float(os.getenv('GENERATION_TIMEOUT_SECONDS', '120'))
SUMMARY_TEMPERATURE = float(os.getenv('SUMMARY_TEMPERATURE', '0.3'))

SYSTEM_PROMPT = (
    'You are a tutor helping a candidate prepare for technical interviews. '
    'Analyse the provided material and turn it into review cards the candidate can study repeatedly.'
)
SUMMARY_SYSTEM_PROMPT = (
    'You are a tutor helping a candidate prepare for system design and behavioral interviews. '
    'Summarize the provided material as well structured markdown.'
)


def build_messages(url: str, content: str, topic: Optional[str] = None, requirements: Optional[str] = None, anchor: Optional[CardRecord] = None) -> List[Dict[str, str]]:
    lines = [f'Analyze the content from url {url}.']
    if topic:
        lines.append(f'Treat the topic as: {topic}.')
    if requirements:
        lines.append(f'Respect these additional requirements: {requirements}.')
    lines.append('Turn the content into Anki-style cards.')
    if anchor is not None:
        lines.extend([
            'Cards already exist for the start of this material. Continue right after the last saved card.',
            f'Previous front: {anchor.front}',
            f'Previous back: {anchor.back}',
        ])
        if anchor.extra:
            lines.append(f'Previous extra: {anchor.extra}')
    else:
        lines.append('Start from the beginning of the provided content.')
    lines.extend([
        'Create at least one card per important idea, with summary cards for each major section.',
        'If nothing remains to cover, return an empty cards array.',
        'Respond strictly in JSON: {"title": "Meaningful title", "tags": ["SystemDesign"], "cards": [{"front": "question", "back": "detailed answer", "extra": "optional tips"}]}.',
        'Here is the raw content, bounded by triple quotes:',
        '"""',
        content,
        '"""',
    ])
    return [
        {'role': 'system', 'content': SYSTEM_PROMPT},
        {'role': 'user', 'content': '\n'.join(lines)},
    ]


def build_summary_messages(content: str, topic: Optional[str] = None) -> List[Dict[str, str]]:
    lines = []
    if topic:
        lines.append(f'Topic: {topic}')
    lines.extend([
        'Create a comprehensive summary of the provided content for system design and behavioral interview preparation.',
        '- Keep every main point, technical detail and framework',
        '- Answer in valid markdown with headings, lists and code blocks where useful',
        '- Organise the content into clear sections and end with key takeaways',
        'Here is the content to summarize, bounded by triple quotes:',
        '"""',
        content,
        '"""',
    ])
    return [
        {'role': 'system', 'content': SUMMARY_SYSTEM_PROMPT},
        {'role': 'user', 'content': '\n'.join(lines)},
    ]


class CardGenerator:
    """Calls an OpenAI-compatible chat completions endpoint and returns the raw text.

    A single attempt per call: a failed generation fails the job and the user resubmits.
    """

    _instance = None

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, model: Optional[str] = None, timeout: Optional[float] = None, client: Any = None):
        self.api_key = api_key or GENERATION_API_KEY
        self.base_url = base_url or GENERATION_BASE_URL
        self.model = model or GENERATION_MODEL
        self.timeout = timeout or GENERATION_TIMEOUT_SECONDS
        self._client = client
        LOG.info('CardGenerator initialized', extra={'model': self.model, 'base_url': self.base_url})

    @classmethod
    def get_instance(cls) -> 'CardGenerator':
        if cls._instance is None:
            cls._instance = CardGenerator()
        return cls._instance

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise UpstreamFailure('Generation service is not configured')
            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout, max_retries=0)
        return self._client

    def generate(self, url: str, content: str, topic: Optional[str] = None, requirements: Optional[str] = None, anchor: Optional[CardRecord] = None, job_id: Optional[str] = None) -> str:
        messages = build_messages(url, content, topic=topic, requirements=requirements, anchor=anchor)
        return self._complete(messages, GENERATION_TEMPERATURE, job_id)

    def summarize(self, content: str, topic: Optional[str] = None, request_id: Optional[str] = None) -> str:
        """Markdown summary of ``content``; same client and failure mapping as ``generate``."""
        return self._complete(build_summary_messages(content, topic), SUMMARY_TEMPERATURE, request_id)

    def _complete(self, messages: List[Dict[str, str]], temperature: float, job_id: Optional[str]) -> str:
        client = self._get_client()
        start = time.time()
        try:
            resp = client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=GENERATION_MAX_TOKENS,
            )
        except APITimeoutError as e:
            LOG.exception('generation_timeout', extra={'job_id': job_id})
            raise UpstreamFailure('Generation service timed out', job_id=job_id) from e
        except OpenAIError as e:
            LOG.exception('generation_api_error', extra={'job_id': job_id})
            raise UpstreamFailure('Generation service request failed', job_id=job_id) from e

        duration_ms = int((time.time() - start) * 1000)
        usage = getattr(resp, 'usage', None)
        log_llm_call(
            job_id or '',
            self.model,
            getattr(usage, 'prompt_tokens', 0) or 0,
            getattr(usage, 'completion_tokens', 0) or 0,
            duration_ms,
        )
        choices = getattr(resp, 'choices', None) or []
        text = choices[0].message.content if choices else None
        if not isinstance(text, str) or not text.strip():
            raise UpstreamFailure('Generation response missing content', job_id=job_id)
        return text
