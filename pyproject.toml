[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "seesaw"
version = "0.1.0"
description = "Backend healthchecks and IPVS service model for a layer 4 load balancer"
requires-python = ">=3.10"
dependencies = [
    "dnspython",
]
keywords = ["load balancer", "healthcheck", "ipvs", "radius", "dns", "icmp"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["seesaw"]

[tool.pytest.ini_options]
addopts = "-ra"
