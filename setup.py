from setuptools import setup, find_packages


setup(
    name="sigil",
    version="0.1",
    description="Regenerative, self-verifying file containers with chaotic transform and parity-assisted recovery.",
    packages=find_packages(include=["sigil", "sigil.*"]),
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
        "zstandard>=0.22.0",
    ],
    entry_points={
        "console_scripts": [
            "sigil=sigil.cli:main",
        ],
    },
)
