[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "appimaged"
version = "0.1.0"
description = "Daemon that registers AppImages and integrates them with the desktop"
requires-python = ">=3.10"
keywords = ["appimage", "desktop", "integration", "daemon", "xdg", "menu", "thumbnail"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Desktop Environment",
]
dependencies = [
    "paho-mqtt",
    "psutil",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
appimaged = "appimaged.daemon:main"

[tool.hatch.build.targets.wheel]
packages = ["appimaged"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
