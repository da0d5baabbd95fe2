[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tproxyconf"
version = "6.1.4"
description = "Transparent proxy configuration: route system traffic through a TUN device"
requires-python = ">=3.10"
dependencies = []
keywords = ["tun", "network", "tunnel", "transparent", "proxy", "routing"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Operating System :: Microsoft :: Windows",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tproxyconf"]

[tool.pytest.ini_options]
addopts = "-ra"
