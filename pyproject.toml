[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "drive402"
version = "0.1.0"
description = "CiA 402 drive profile state machine, operation modes and motor layer for CANopen devices"
requires-python = ">=3.10"
dependencies = []
keywords = ["canopen", "cia402", "ds402", "motor", "drive", "state machine"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Typing :: Typed",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN) :: CANopen",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["drive402"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
