"""
settings.py
-----------
MTB FHIR Bridge: Configuration
------------------------------
One explicit ``Settings`` object is constructed at process start and passed
to every component that needs it.  Nothing reads configuration from module
globals after startup.

Load order (later wins):
  1. Field defaults below.
  2. YAML file: ``MTB_SETTINGS`` env var, else ``settings.yaml`` next to this
     module.
  3. Environment variables (``.env`` is loaded via python-dotenv):

        FHIR_BASE_URL          → fhir_base
        PORTAL_URL             → portal_url
        LOGIN_REQUIRED         → login_required   ("1"/"true"/"yes")
        FILE_SERVER            → file_server
        FILE_SERVER_BUCKET     → bucket
        FILE_SERVER_ACCESS_KEY → file_server_access_key
        FILE_SERVER_SECRET_KEY → file_server_secret_key
        DIAGNOSTICS_DIR        → diagnostics_dir

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_ENV_OVERRIDES: Dict[str, str] = {
    "FHIR_BASE_URL":          "fhir_base",
    "PORTAL_URL":             "portal_url",
    "LOGIN_REQUIRED":         "login_required",
    "FILE_SERVER":            "file_server",
    "FILE_SERVER_BUCKET":     "bucket",
    "FILE_SERVER_ACCESS_KEY": "file_server_access_key",
    "FILE_SERVER_SECRET_KEY": "file_server_secret_key",
    "DIAGNOSTICS_DIR":        "diagnostics_dir",
}


class IdentifierSystems(BaseModel):
    """Identifier systems; each (system, value) pair is unique per resource type."""

    model_config = ConfigDict(extra="forbid")

    patient:                str = "https://cbioportal.org/patient/"
    mtb:                    str = "https://cbioportal.org/mtb/"
    therapy_recommendation: str = "https://cbioportal.org/therapyrecommendation/"
    follow_up:              str = "https://cbioportal.org/followup/"
    response:               str = "https://cbioportal.org/response/"
    specimen:               str = "https://cbioportal.org/specimen/"


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    port:           int   = 3001
    fhir_base:      str   = "http://localhost:8080/fhir/"
    portal_url:     str   = "http://localhost:8080/"
    login_required: bool  = False
    timeout_s:      float = 60.0

    systems: IdentifierSystems = Field(default_factory=IdentifierSystems)

    # Reference data
    hgnc_path:   Optional[str] = None
    oncokb_path: Optional[str] = None
    pubmed_url:  str = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esummary.fcgi"

    # Object storage (S3-compatible); images fall back to FHIR Binary when unset
    file_server:            Optional[str] = None
    bucket:                 str           = "mtb-presentation"
    file_server_access_key: Optional[str] = None
    file_server_secret_key: Optional[str] = None

    diagnostics_dir: str       = "diagnostics"
    cors_origins:    List[str] = Field(default_factory=lambda: ["*"])

    # Clinical attributes stored verbatim as valueString (AGE and SEX have
    # dedicated handlers in clinical_data.py).
    string_clinical_attributes: List[str] = Field(
        default_factory=lambda: [
            "CANCER_TYPE",
            "CANCER_TYPE_DETAILED",
            "ONCOTREE_CODE",
            "TUMOR_TYPE",
            "SAMPLE_TYPE",
            "PRIMARY_SITE",
            "METASTATIC_SITE",
            "TMB_NONSYNONYMOUS",
            "MSI_SCORE",
            "MSI_TYPE",
            "GRADE",
            "STAGE",
            "OS_STATUS",
            "OS_MONTHS",
            "DFS_STATUS",
            "DFS_MONTHS",
        ]
    )

    @field_validator("fhir_base", "portal_url")
    @classmethod
    def ensure_trailing_slash(cls, v: str) -> str:
        """Base URLs are joined with relative paths, so they must end in '/'."""
        return v if v.endswith("/") else v + "/"

    @property
    def storage_enabled(self) -> bool:
        return bool(self.file_server)


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        if field_name == "login_required":
            overrides[field_name] = raw.strip().lower() in ("1", "true", "yes")
        else:
            overrides[field_name] = raw
    return overrides


def load_settings(path: Optional[str | Path] = None) -> Settings:
    """
    Build the process-wide ``Settings``.

    Args:
        path: YAML file to read.  Defaults to ``$MTB_SETTINGS`` or the bundled
              ``settings.yaml``.  A missing default file is not an error; a
              missing explicit file is.

    Returns:
        Validated ``Settings``.

    Raises:
        FileNotFoundError:        explicit *path* does not exist.
        pydantic.ValidationError: the merged configuration is invalid.
    """
    load_dotenv()

    explicit = path or os.getenv("MTB_SETTINGS")
    yaml_path = Path(explicit) if explicit else DEFAULT_SETTINGS_PATH

    data: Dict[str, Any] = {}
    if yaml_path.is_file():
        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f) or {}
        logger.info("settings: loaded %s", yaml_path)
    elif explicit:
        raise FileNotFoundError(f"Settings file not found: {yaml_path}")
    else:
        logger.info("settings: %s not found, using defaults", yaml_path)

    data.update(_env_overrides())
    return Settings(**data)
