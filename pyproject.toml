[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "filedrop"
version = "0.1.0"
description = "A small TCP file-drop server and client that stores uploads in group-restricted directories"
requires-python = ">=3.10"
dependencies = []
keywords = ["file transfer", "tcp", "socket", "upload", "permissions"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
filedrop-server = "filedrop.server:main"
filedrop-client = "filedrop.client:main"

[tool.hatch.build.targets.wheel]
packages = ["filedrop"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
