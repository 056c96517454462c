#!/usr/bin/env python3
"""
Configuration Validation Script
Checks the environment variables the grid backend reads
"""
import os
import sys
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _float_env(name, default, errors):
    raw = os.getenv(name)
    if raw is None:
        print(f"{name}: {default} (default)")
        return
    try:
        value = float(raw)
    except ValueError:
        errors.append(f"{name} must be a number. Got: {raw}")
        return
    if value < 0:
        errors.append(f"{name} must not be negative. Got: {raw}")
    else:
        print(f"{name}: {value}")


def validate_config():
    """Validate configuration"""
    print("Validating configuration...\n")

    errors = []
    warnings = []

    database_url = os.getenv('DATABASE_URL', 'sqlite:///./atlas.db')
    print("DATABASE_URL:", database_url)
    if database_url.startswith('sqlite:///'):
        db_dir = Path(database_url.replace('sqlite:///', '', 1)).parent
        if not db_dir.exists():
            errors.append(f"SQLite directory does not exist: {db_dir}")
        elif not os.access(db_dir, os.W_OK):
            errors.append(f"SQLite directory is not writable: {db_dir}")

    seed_path = os.getenv('SEED_DATA_PATH')
    if seed_path:
        if not Path(seed_path).exists():
            errors.append(f"SEED_DATA_PATH does not exist: {seed_path}")
        else:
            print("SEED_DATA_PATH exists")

    # At least one LLM provider for agents
    providers = {
        'OPENAI_API_KEY': 'OpenAI agents',
        'ANTHROPIC_API_KEY': 'Anthropic agents',
        'GEMINI_API_KEY': 'Gemini agents and web search',
    }
    configured = []
    for key, feature in providers.items():
        if os.getenv(key, '').strip():
            print(f"{key} is set")
            configured.append(key)
        else:
            warnings.append(f"{key} not set ({feature} disabled)")
    if not configured:
        warnings.append("No LLM provider configured; every agent run will fail")

    if not os.getenv('SERPER_API_KEY', '').strip():
        warnings.append("SERPER_API_KEY not set (GOOGLE_SEARCH agents disabled)")
    else:
        print("SERPER_API_KEY is set")

    if not os.getenv('OPEN_REGISTER_API_KEY', '').strip():
        warnings.append("OPEN_REGISTER_API_KEY not set (company registry workflow disabled)")
    else:
        print("OPEN_REGISTER_API_KEY is set")

    _float_env('PERSIST_DEBOUNCE_SECONDS', 1.0, errors)
    _float_env('AUTO_TRIGGER_DELAY_SECONDS', 0.1, errors)

    print("\n" + "="*60)
    if warnings:
        print("\nWARNINGS:")
        for w in warnings:
            print(" ", w)
    if errors:
        print("\nERRORS:")
        for e in errors:
            print(" ", e)
        print("\nValidation failed. Fix errors above.\n")
        return False
    print("\nValidation passed.\n")
    return True


if __name__ == "__main__":
    success = validate_config()
    sys.exit(0 if success else 1)
