#!/usr/bin/env python3
"""
Development tasks for providerql.

    python dev_tasks.py test                      # SQLite (aiosqlite), the default
    python dev_tasks.py test-db postgresql+asyncpg://user:pw@localhost/providerql_test
    python dev_tasks.py test-db mysql+aiomysql://user:pw@localhost/providerql_test
"""

import os
import shutil
import subprocess
import sys

PACKAGE = "providerql"
TEST_DB_ENV = "PROVIDERQL_TEST_DATABASE_URL"


def run_command(command, check=True, env=None):
    print(f"Running: {command}")
    result = subprocess.run(command, shell=True, check=check, env=env)
    return result.returncode == 0


def clean():
    print("Cleaning build artifacts...")
    for path in ["build", "dist", ".pytest_cache", ".mypy_cache", "htmlcov"]:
        shutil.rmtree(path, ignore_errors=True)
    for name in os.listdir("."):
        if name.endswith(".egg-info"):
            shutil.rmtree(name, ignore_errors=True)
    for root, dirs, _files in os.walk("."):
        if "__pycache__" in dirs:
            shutil.rmtree(os.path.join(root, "__pycache__"), ignore_errors=True)
    print("Clean completed.")


def format_code():
    print("Formatting code...")
    run_command(f"black {PACKAGE} tests dev_tasks.py")
    run_command(f"isort {PACKAGE} tests dev_tasks.py")


def lint():
    print("Running linting...")
    ok = run_command(f"mypy {PACKAGE}", check=False)
    ok = run_command(f"flake8 {PACKAGE} tests", check=False) and ok
    if not ok:
        print("Linting failed.")
        sys.exit(1)
    print("Linting passed.")


def test():
    run_command(f"pytest tests/ -v --cov={PACKAGE} --cov-report=term")


def test_db(url=None):
    """Run the suite against another backend; the URL may also come from the environment."""
    url = url or os.getenv(TEST_DB_ENV)
    if not url:
        print(f"Usage: python dev_tasks.py test-db <async database url>  (or set {TEST_DB_ENV})")
        sys.exit(1)
    env = dict(os.environ, **{TEST_DB_ENV: url})
    if not run_command("pytest tests/ -v", check=False, env=env):
        sys.exit(1)


def build():
    clean()
    run_command("python -m build")


def install_dev():
    run_command("pip install -e .[dev,test,postgres,mysql]")


def main():
    commands = {
        "clean": clean,
        "format": format_code,
        "lint": lint,
        "test": test,
        "test-db": lambda: test_db(sys.argv[2] if len(sys.argv) > 2 else None),
        "build": build,
        "install-dev": install_dev,
        "all": lambda: (format_code(), lint(), test(), build()),
    }
    if len(sys.argv) < 2 or sys.argv[1] not in commands:
        print("Usage: python dev_tasks.py <command>")
        print("Commands: " + ", ".join(commands))
        sys.exit(1)
    commands[sys.argv[1]]()


if __name__ == "__main__":
    main()
