"""Readiness report for the OCR language data and the local model file.

Only presence is checked; fetching the files is left to the operator.
"""

import logging
from typing import Optional

from expense_ingest.core.config import get_settings
from expense_ingest.schemas.imports import ImportSetupItemStatus, ImportSetupStatus
from expense_ingest.services.ai.common.local_runtime import DEFAULT_MODEL_NAME, LocalLlmRuntime
from expense_ingest.services.text_extraction import DocumentTextExtractor

logger = logging.getLogger(__name__)

TESSERACT_KEY = "tesseract"
LLM_KEY = "llm"
INSTALLED = "Installed"
DOWNLOAD_REQUIRED = "DownloadRequired"


def _detail(installed: bool) -> str:
    return INSTALLED if installed else DOWNLOAD_REQUIRED


def get_setup_status(
    extractor: DocumentTextExtractor,
    runtime: Optional[LocalLlmRuntime] = None,
) -> ImportSetupStatus:
    settings = get_settings()

    language = extractor.language_code()
    ocr_ready = extractor.has_ocr_data(language)

    uses_local_model = settings.llm_provider == "local"
    model_ready = runtime.is_model_available() if runtime is not None else False
    model_name = runtime.model_path.name if runtime is not None and runtime.model_path else DEFAULT_MODEL_NAME

    items = [
        ImportSetupItemStatus(
            key=TESSERACT_KEY,
            title="Tesseract OCR",
            name=language,
            is_installed=ocr_ready,
            is_required=True,
            detail=_detail(ocr_ready),
        ),
        ImportSetupItemStatus(
            key=LLM_KEY,
            title="LLM model",
            name=model_name,
            is_installed=model_ready,
            is_required=uses_local_model,
            detail=_detail(model_ready),
        ),
    ]
    ready = all(item.is_installed for item in items if item.is_required)
    if not ready:
        logger.info("Import setup incomplete: %s", [item.key for item in items if item.is_required and not item.is_installed])
    return ImportSetupStatus(ready=ready, items=items)
