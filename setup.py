from setuptools import find_packages, setup

setup(
    name="ci-gate",
    version="0.1.0",
    packages=find_packages(
        include=[
            "gate_common",
            "gate_common.*",
            "gate_persistence",
            "gate_persistence.*",
            "gate_controller",
            "gate_controller.*",
            "gate_server",
            "gate_server.*",
            "gate_client",
            "gate_client.*",
            "gate_admin",
            "gate_admin.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "python-multipart>=0.0.6",
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ci-gate=gate_client.cli:main",
            "ci-gate-controller=gate_controller.__main__:main",
            "ci-gate-server=gate_server.__main__:main",
            "ci-gate-admin=gate_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
