"""MacBridge — remote macOS build and debug orchestration over SSH."""
