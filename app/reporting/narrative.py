# ============================================================================
# CEIBA - AI Narrative Generation
# ============================================================================
# One provider class per AI backend (OpenAI, Azure OpenAI, OpenAI-compatible
# local servers, Ollama). NarrativeGenerator wraps whichever provider the
# configuration selects in a time box and never raises: every failure comes
# back as a NarrativeResult with an error so the pipeline can fall back.
# ============================================================================

import json
import logging
import threading
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Sequence

from .models import AiProviderConfig
from .statistics import IncidentRecord, ReportStatistics, sorted_counts

logger = logging.getLogger("reporting.narrative")

SYSTEM_PROMPT = (
    "Eres un analista de seguridad pública especializado en género "
    "que genera reportes ejecutivos."
)

DEFAULT_OPENAI_ENDPOINT = "https://api.openai.com/v1/chat/completions"
DEFAULT_OLLAMA_ENDPOINT = "http://localhost:11434"
DEFAULT_AZURE_API_VERSION = "2024-02-15-preview"


class NarrativeError(Exception):
    """Provider call failed (transport, HTTP status or response shape)."""


@dataclass
class NarrativeResult:
    text: str = ""
    success: bool = False
    error: Optional[str] = None
    tokens_used: int = 0
    provider: str = ""

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "provider": self.provider,
            "tokens_used": self.tokens_used,
            "error": self.error,
        }


# ============================================================================
# Providers
# ============================================================================

class NarrativeProvider(ABC):
    """Capability interface for a text-generation backend."""

    provider_name: str = "base"

    def __init__(self, config: AiProviderConfig, timeout: float = 60):
        self.config = config
        self.timeout = timeout

    @abstractmethod
    def complete(self, prompt: str) -> NarrativeResult:
        """Send one prompt; raises NarrativeError on failure."""
        pass

    def _messages(self, prompt: str):
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

    def _post_json(self, url: str, payload: Dict, headers: Optional[Dict] = None) -> Dict:
        req = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", **(headers or {})},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", "replace") if e.fp else ""
            logger.error(f"{self.provider_name} API error {e.code}: {error_body[:500]}")
            raise NarrativeError(f"{self.provider_name} API error: HTTP {e.code}") from e
        except urllib.error.URLError as e:
            raise NarrativeError(f"{self.provider_name} unreachable: {e.reason}") from e

        try:
            return json.loads(body)
        except ValueError as e:
            raise NarrativeError(f"{self.provider_name} returned invalid JSON") from e

    @staticmethod
    def _chat_content(data: Dict) -> str:
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise NarrativeError("Unexpected chat completion response") from e

    @staticmethod
    def _usage(data: Dict) -> int:
        usage = data.get("usage") or {}
        return int(usage.get("total_tokens") or 0)


class OpenAIProvider(NarrativeProvider):
    provider_name = "OpenAI"

    def _url(self) -> str:
        return self.config.endpoint or DEFAULT_OPENAI_ENDPOINT

    def _headers(self) -> Dict:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def complete(self, prompt: str) -> NarrativeResult:
        payload = {
            "model": self.config.model,
            "messages": self._messages(prompt),
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }
        data = self._post_json(self._url(), payload, self._headers())
        return NarrativeResult(
            text=self._chat_content(data),
            success=True,
            tokens_used=self._usage(data),
            provider=self.provider_name,
        )


class AzureOpenAIProvider(OpenAIProvider):
    """
    Azure deployments are addressed by URL; the model name doubles as the
    deployment name when the endpoint is just the resource root.
    """

    provider_name = "AzureOpenAI"

    def _url(self) -> str:
        base = (self.config.endpoint or "").rstrip("/")
        if "/chat/completions" not in base:
            base = f"{base}/openai/deployments/{self.config.model}/chat/completions"
        version = self.config.azure_api_version or DEFAULT_AZURE_API_VERSION
        return f"{base}?api-version={version}"

    def _headers(self) -> Dict:
        return {"api-key": self.config.api_key or ""}


class LocalProvider(OpenAIProvider):
    """OpenAI-compatible server (LM Studio, vLLM, llama.cpp) - no key."""

    provider_name = "Local"

    def _url(self) -> str:
        base = (self.config.endpoint or "").rstrip("/")
        if base.endswith("/chat/completions"):
            return base
        return f"{base}/v1/chat/completions"

    def _headers(self) -> Dict:
        return {}


class OllamaProvider(NarrativeProvider):
    provider_name = "Ollama"

    def _url(self) -> str:
        base = (self.config.endpoint or DEFAULT_OLLAMA_ENDPOINT).rstrip("/")
        if base.endswith("/api/generate"):
            return base
        return f"{base}/api/generate"

    def complete(self, prompt: str) -> NarrativeResult:
        payload = {
            "model": self.config.model,
            "system": SYSTEM_PROMPT,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            },
        }
        data = self._post_json(self._url(), payload)
        if "response" not in data:
            raise NarrativeError("Unexpected Ollama response")
        return NarrativeResult(
            text=data.get("response") or "",
            success=True,
            tokens_used=int(data.get("eval_count") or 0),
            provider=self.provider_name,
        )


PROVIDERS = {
    "OpenAI": OpenAIProvider,
    "AzureOpenAI": AzureOpenAIProvider,
    "Local": LocalProvider,
    "Ollama": OllamaProvider,
}


def get_narrative_provider(config: AiProviderConfig, timeout: float = 60) -> NarrativeProvider:
    try:
        provider_cls = PROVIDERS[config.provider]
    except KeyError:
        raise NarrativeError(f"Unknown AI provider: {config.provider}")
    return provider_cls(config, timeout=timeout)


# ============================================================================
# Prompt + fallback text
# ============================================================================

def build_prompt(stats: ReportStatistics,
                 period_start: datetime,
                 period_end: datetime,
                 records: Sequence[IncidentRecord] = (),
                 max_records: int = 0) -> str:
    lines = [
        "Genera un resumen narrativo profesional para un reporte de incidencias de género.",
        f"Período: {period_start:%d/%m/%Y} al {period_end:%d/%m/%Y}",
        "",
        "ESTADÍSTICAS GENERALES:",
        f"- Total de reportes: {stats.total_count}",
    ]
    if stats.most_frequent_crime:
        lines.append(f"- Delito más frecuente: {stats.most_frequent_crime}")
    if stats.most_active_zone:
        lines.append(f"- Zona con más incidencias: {stats.most_active_zone}")
    if stats.lgbtq_count:
        lines.append(f"- Casos LGBTTTIQ+: {stats.lgbtq_count}")
    if stats.migrant_count:
        lines.append(f"- Casos de migrantes: {stats.migrant_count}")
    if stats.street_situation_count:
        lines.append(f"- Casos en situación de calle: {stats.street_situation_count}")
    if stats.disability_count:
        lines.append(f"- Casos con discapacidad: {stats.disability_count}")

    for title, counts in (("DISTRIBUCIÓN POR SEXO", stats.by_sex),
                          ("DISTRIBUCIÓN POR TIPO DE DELITO", stats.by_crime_type),
                          ("DISTRIBUCIÓN POR ZONA", stats.by_zone)):
        if counts:
            lines.append("")
            lines.append(f"{title}:")
            lines.extend(f"- {key}: {count}" for key, count in sorted_counts(counts))

    sample = list(records)[:max_records] if max_records else []
    if sample:
        lines.append("")
        lines.append(f"DETALLE DE CASOS ({len(sample)} de {stats.total_count}):")
        for n, rec in enumerate(sample, 1):
            lines.append("")
            lines.append(f"--- Caso #{n} ---")
            lines.append(f"Folio: {rec.folio or rec.id}")
            if rec.created_at:
                lines.append(f"Fecha: {rec.created_at:%d/%m/%Y %H:%M}")
            lines.append(f"Tipo de delito: {rec.crime_type}")
            if rec.reported_facts:
                lines.append(f"Hechos reportados: {rec.reported_facts}")
            if rec.actions_taken:
                lines.append(f"Acciones realizadas: {rec.actions_taken}")

    lines += [
        "",
        "INSTRUCCIONES PARA LA NARRATIVA:",
        "1. Redacta un resumen ejecutivo en tono formal y profesional.",
        "2. Destaca las tendencias más importantes observadas.",
        "3. Menciona los casos listados con su folio y tipo de delito.",
        "4. Incluye recomendaciones basadas en los patrones identificados.",
        "5. El texto debe estar en español.",
    ]
    return "\n".join(lines)


def fallback_narrative(stats: ReportStatistics, period_start: datetime, period_end: datetime) -> str:
    """Deterministic summary used whenever the AI stage fails."""
    lines = [
        f"Durante el período del {period_start:%d/%m/%Y} al {period_end:%d/%m/%Y} "
        f"se registraron un total de **{stats.total_count} reportes de incidencias**, "
        f"de los cuales {stats.delivered_count} fueron formalmente entregados.",
    ]
    if stats.most_frequent_crime:
        lines.append("")
        lines.append(f"El tipo de delito más frecuente fue **{stats.most_frequent_crime}**.")
    if stats.most_active_zone:
        lines.append("")
        lines.append(f"La zona con mayor número de incidencias fue **{stats.most_active_zone}**.")
    lines.append("")
    lines.append("*Nota: Este resumen fue generado automáticamente sin asistencia de IA.*")
    return "\n".join(lines)


# ============================================================================
# Generator
# ============================================================================

class NarrativeGenerator:
    """
    Best-effort narrative generation with a hard time box.

    The provider call runs on a worker thread; the caller waits at most
    `timeout` seconds and stops waiting early when `cancel_event` is set.
    """

    poll_interval = 0.25

    def __init__(self, provider_factory=get_narrative_provider):
        self.provider_factory = provider_factory

    def generate(self,
                 stats: ReportStatistics,
                 config: Optional[AiProviderConfig],
                 period_start: datetime,
                 period_end: datetime,
                 records: Sequence[IncidentRecord] = (),
                 timeout: float = 60,
                 cancel_event: Optional[threading.Event] = None) -> NarrativeResult:
        if config is None:
            return NarrativeResult(error="AI provider not configured")

        try:
            provider = self.provider_factory(config, timeout=timeout)
        except NarrativeError as e:
            return NarrativeResult(error=str(e), provider=config.provider)

        prompt = build_prompt(stats, period_start, period_end, records,
                              config.max_records_for_narrative)
        return self._run_boxed(lambda: provider.complete(prompt), config.provider,
                               timeout, cancel_event)

    def test_connection(self, config: AiProviderConfig, timeout: float = 30) -> NarrativeResult:
        try:
            provider = self.provider_factory(config, timeout=timeout)
        except NarrativeError as e:
            return NarrativeResult(error=str(e), provider=config.provider)
        return self._run_boxed(lambda: provider.complete("Responde únicamente: OK"),
                               config.provider, timeout, None)

    def _run_boxed(self, call, provider_name: str, timeout: float,
                   cancel_event: Optional[threading.Event]) -> NarrativeResult:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="narrative")
        future = executor.submit(call)
        waited = 0.0
        try:
            while True:
                done, _ = wait([future], timeout=min(self.poll_interval, max(timeout - waited, 0)))
                if done:
                    break
                waited += self.poll_interval
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning("Narrative generation cancelled (%s)", provider_name)
                    return NarrativeResult(error="Narrative generation cancelled",
                                           provider=provider_name)
                if waited >= timeout:
                    logger.warning("Narrative generation timed out after %ss (%s)",
                                   timeout, provider_name)
                    return NarrativeResult(error=f"Narrative generation timed out after {timeout}s",
                                           provider=provider_name)
            try:
                result = future.result()
            except NarrativeError as e:
                logger.warning("Narrative generation failed (%s): %s", provider_name, e)
                return NarrativeResult(error=str(e), provider=provider_name)
            except Exception as e:
                logger.error("Narrative provider %s crashed: %s", provider_name, e, exc_info=True)
                return NarrativeResult(error=f"{provider_name} error: {e}", provider=provider_name)

            if not result.text.strip():
                return NarrativeResult(error=f"{provider_name} returned an empty narrative",
                                       provider=provider_name)
            logger.info("Narrative generated by %s (%d tokens)", provider_name, result.tokens_used)
            return result
        finally:
            executor.shutdown(wait=False)
