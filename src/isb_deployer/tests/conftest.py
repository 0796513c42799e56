"""
conftest file
"""
import os

# Importing the handler patches botocore for X-Ray, which needs a segment
# for every call. Tests run without one.
os.environ.setdefault("AWS_XRAY_SDK_ENABLED", "false")
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-2")
