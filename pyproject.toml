[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "localchat"
version = "0.1.0"
description = "Building blocks for serverless local-network chat: wire protocol, identity, mDNS discovery, chat state and Tk widgets"
requires-python = ">=3.10"
keywords = ["chat", "lan", "mdns", "zeroconf", "peer-to-peer", "messaging", "tkinter"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Communications :: Chat",
]
dependencies = [
    "dnspython",
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["localchat"]

[tool.pytest.ini_options]
addopts = "-ra"
