from setuptools import setup, find_namespace_packages

setup(
    name="envrecipe",
    version="0.1.0",
    packages=find_namespace_packages(where="src"),
    package_dir={"": "src"},
    # tarfile extraction filters (tar_filter) ship from 3.11.4 and 3.12
    python_requires=">=3.11.4",
    install_requires=[
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "envrecipe=envrecipe.CLI.main:main",
        ],
    },
)
