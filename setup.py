from setuptools import setup, find_packages


setup(
    name="sitepkg",
    version="0.1",
    packages=find_packages(include=["sitepkg", "sitepkg.*"]),
    description="Manifest-driven site packaging with optional compression and sealed-box encryption.",
    author="vercingetorx",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "zstandard>=0.22.0",
        "boto3>=1.34.0",
        "botocore>=1.34.0",
        "httpx>=0.27.0",
        "structlog>=23.1.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    entry_points={
        "console_scripts": [
            "sitepkg=sitepkg.cli:main",
            "sitepkgmgr=sitepkg.mgr:main",
        ]
    },
)
