from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INVOICE_SYSTEM_PROMPT = (
    "You read OCR text of invoices and receipts. Reply with one JSON object and nothing else. "
    "Keys: vendorName (string), invoiceDate (YYYY-MM-DD), totalAmount (number), "
    "currency (ISO 4217 code), notes (string or null), confidence (number between 0 and 1), "
    "lineItems (array of objects with description, quantity, unitPrice, totalPrice, or null)."
)
DEFAULT_INVOICE_USER_PROMPT = "Extract invoice data from the text and respond only with JSON. Text: {{text}}"
DEFAULT_CATEGORY_SYSTEM_PROMPT = (
    "You classify expenses into one of the provided categories. Reply with one JSON object "
    "with keys categoryId (one of the provided ids, or null), confidence (0..1) and rationale."
)
DEFAULT_CATEGORY_USER_PROMPT = (
    "Choose the best category for the invoice. Return strict JSON with categoryId, confidence, "
    "rationale. Input: {{json}}"
)

SUPPORTED_LLM_PROVIDERS = ("local", "openai", "azureopenai", "ollama")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )

    database_url: str = ""
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL"))
    expose_error_details: bool = Field(
        default=False,
        validation_alias=AliasChoices("EXPOSE_ERROR_DETAILS"),
    )
    docs_enabled: bool = Field(default=True, validation_alias=AliasChoices("DOCS_ENABLED"))

    # --- Content-addressed store ---
    import_storage_dir: str = Field(
        default="var/imports",
        validation_alias=AliasChoices("IMPORT_STORAGE_DIR"),
    )
    max_import_bytes: int = Field(
        default=20 * 1024 * 1024,
        validation_alias=AliasChoices("MAX_IMPORT_BYTES"),
    )

    # --- OCR ---
    tessdata_dir: str = Field(default="var/tessdata", validation_alias=AliasChoices("TESSDATA_DIR"))
    ocr_language: str = Field(default="eng", validation_alias=AliasChoices("OCR_LANGUAGE"))
    ocr_pdf_dpi: int = Field(default=300, validation_alias=AliasChoices("OCR_PDF_DPI"))
    tesseract_cmd: str = Field(default="", validation_alias=AliasChoices("TESSERACT_CMD"))

    # --- LLM backend ---
    llm_provider: str = Field(default="", validation_alias=AliasChoices("LLM_PROVIDER"))
    llm_endpoint: str = Field(default="", validation_alias=AliasChoices("LLM_ENDPOINT"))
    llm_api_key: str = Field(default="", validation_alias=AliasChoices("LLM_API_KEY"))
    llm_deployment: str = Field(default="", validation_alias=AliasChoices("LLM_DEPLOYMENT"))
    llm_model: str = Field(default="", validation_alias=AliasChoices("LLM_MODEL"))
    llm_timeout_seconds: float = Field(default=30.0, validation_alias=AliasChoices("LLM_TIMEOUT_SECONDS"))
    llm_temperature: float = Field(default=0.2, validation_alias=AliasChoices("LLM_TEMPERATURE"))
    llm_max_tokens: int = Field(default=512, validation_alias=AliasChoices("LLM_MAX_TOKENS"))

    # --- Local in-process model ---
    local_model_path: str = Field(default="", validation_alias=AliasChoices("LOCAL_MODEL_PATH"))
    local_model_context_size: int = Field(
        default=2048,
        validation_alias=AliasChoices("LOCAL_MODEL_CONTEXT_SIZE"),
    )
    local_model_max_tokens: int = Field(
        default=256,
        validation_alias=AliasChoices("LOCAL_MODEL_MAX_TOKENS"),
    )
    local_model_gpu_layers: int = Field(
        default=0,
        validation_alias=AliasChoices("LOCAL_MODEL_GPU_LAYERS"),
    )

    # --- Invoice interpreter ---
    invoice_enable_llm: bool = Field(default=True, validation_alias=AliasChoices("INVOICE_ENABLE_LLM"))
    invoice_system_prompt: str = Field(
        default=DEFAULT_INVOICE_SYSTEM_PROMPT,
        validation_alias=AliasChoices("INVOICE_SYSTEM_PROMPT"),
    )
    invoice_user_prompt_template: str = Field(
        default=DEFAULT_INVOICE_USER_PROMPT,
        validation_alias=AliasChoices("INVOICE_USER_PROMPT_TEMPLATE"),
    )
    default_currency: str = Field(default="BRL", validation_alias=AliasChoices("DEFAULT_CURRENCY"))

    # --- Category suggestion ---
    category_enable_llm: bool = Field(default=True, validation_alias=AliasChoices("CATEGORY_ENABLE_LLM"))
    category_min_heuristic_confidence: float = Field(
        default=0.6,
        validation_alias=AliasChoices("CATEGORY_MIN_HEURISTIC_CONFIDENCE"),
    )
    category_cache_seconds: int = Field(
        default=300,
        validation_alias=AliasChoices("CATEGORY_CACHE_SECONDS"),
    )
    category_system_prompt: str = Field(
        default=DEFAULT_CATEGORY_SYSTEM_PROMPT,
        validation_alias=AliasChoices("CATEGORY_SYSTEM_PROMPT"),
    )
    category_user_prompt_template: str = Field(
        default=DEFAULT_CATEGORY_USER_PROMPT,
        validation_alias=AliasChoices("CATEGORY_USER_PROMPT_TEMPLATE"),
    )
    learned_rule_confidence: float = Field(
        default=0.7,
        validation_alias=AliasChoices("LEARNED_RULE_CONFIDENCE"),
    )

    @field_validator("llm_provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value):
        if value is None:
            return ""
        return str(value).strip().lower()

    @field_validator("default_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value):
        raw = str(value or "").strip().upper()
        return raw or "BRL"

    @field_validator("category_min_heuristic_confidence", "learned_rule_confidence")
    @classmethod
    def _confidence_range(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("confidence must be between 0 and 1")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()


@dataclass(frozen=True)
class LlmProviderOptions:
    provider: str = ""
    endpoint: str = ""
    api_key: str = ""
    deployment: str = ""
    model: str = ""
    timeout_seconds: float = 30.0
    temperature: float = 0.2
    max_tokens: int = 512


class OcrLanguageProvider(Protocol):
    def get_language_code(self) -> str: ...


class LlmSettingsProvider(Protocol):
    def get_options(self) -> LlmProviderOptions: ...


class SettingsOcrLanguageProvider:
    """Reads the OCR language from ``OCR_LANGUAGE`` on every call."""

    def get_language_code(self) -> str:
        return get_settings().ocr_language


class SettingsLlmProvider:
    def get_options(self) -> LlmProviderOptions:
        settings = get_settings()
        return LlmProviderOptions(
            provider=settings.llm_provider,
            endpoint=settings.llm_endpoint,
            api_key=settings.llm_api_key,
            deployment=settings.llm_deployment,
            model=settings.llm_model,
            timeout_seconds=settings.llm_timeout_seconds,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )
