"""Entry point for running casemail as a module.

Usage:
    python -m casemail validate-config
    python -m casemail run
    python -m casemail --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything reads CASEMAIL_CONFIG_PATH

from casemail.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
