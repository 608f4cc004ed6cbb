#!/usr/bin/env python3
"""
Backend startup wrapper - runs the API under uvicorn
"""
import os
import sys

# Add workspace to path
workspace_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, workspace_root)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))


if __name__ == "__main__":
    print("[Backend] Starting VibeCoding backend")
    print(f"[Backend] Server: http://localhost:{PORT}")
    print("[Backend] Press CTRL+C to stop")
    print()
    try:
        import uvicorn
        uvicorn.run(
            "backend.main:app",
            host=HOST,
            port=PORT,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
        sys.exit(0)
