"""
FormPilot - lease-based form filling job engine

包初始化：加载项目 .env（OPENAI_API_KEY / FORMPILOT_DATABASE_URL 等）。
"""

from __future__ import annotations

from dotenv import find_dotenv, load_dotenv

# Auto-load project .env once on package import.
# Already-exported variables win over the file.
load_dotenv(find_dotenv(usecwd=True), override=False)

__version__ = "0.1.0"
