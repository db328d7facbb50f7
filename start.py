#!/usr/bin/env python3
"""
Server Launcher for the Race Book Ledger
Starts both FastAPI backend and Streamlit frontend simultaneously
"""

import subprocess
import sys
import os
import time
import signal
import dotenv
dotenv.load_dotenv()

API_PORT = int(os.environ.get("API_PORT", "8000"))
FRONTEND_PORT = int(os.environ.get("FRONTEND_PORT", "8502"))


class ServerLauncher:
    def __init__(self, api_port: int = API_PORT, frontend_port: int = FRONTEND_PORT):
        self.api_port = api_port
        self.frontend_port = frontend_port
        self.backend_process = None
        self.frontend_process = None
        self.running = False

    def check_dependencies(self):
        """Check if required dependencies are installed"""
        print("🔍 Checking dependencies...")

        try:
            import fastapi
            import uvicorn
            import streamlit
            import requests
            print("✅ All required packages are installed")
            return True
        except ImportError as e:
            print(f"❌ Missing dependency: {e}")
            print("Please install dependencies with: pip install -e .")
            return False

    def check_database(self):
        """Report which ledger backend will be used"""
        if os.getenv("DATABASE_URL"):
            print("✅ DATABASE_URL set, ledger will use Postgres")
            return True
        print(f"ℹ️  Ledger will use SQLite at {os.getenv('LEDGER_DB_PATH', 'racebook.db')}")
        return False

    def _backend_env(self):
        env = dict(os.environ)
        env["API_PORT"] = str(self.api_port)
        return env

    def _frontend_env(self):
        env = dict(os.environ)
        env.setdefault("API_BASE_URL", f"http://localhost:{self.api_port}")
        return env

    def start_backend(self):
        """Start the FastAPI backend server"""
        print("🚀 Starting FastAPI backend server...")

        try:
            self.backend_process = subprocess.Popen(
                [sys.executable, "api.py"],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                env=self._backend_env(),
            )

            # Wait a moment for server to start
            time.sleep(3)

            if self.backend_process.poll() is None:
                print("✅ Backend server started successfully")
                print(f"   API available at: http://localhost:{self.api_port}")
                print(f"   API docs at: http://localhost:{self.api_port}/docs")
                return True
            else:
                stdout, stderr = self.backend_process.communicate()
                print("❌ Backend server failed to start:")
                print(f"   Error: {stderr}")
                return False

        except Exception as e:
            print(f"❌ Error starting backend server: {e}")
            return False

    def start_frontend(self):
        """Start the Streamlit frontend server"""
        print("🚀 Starting Streamlit frontend server...")

        try:
            self.frontend_process = subprocess.Popen(
                [sys.executable, "-m", "streamlit", "run", "streamlit_app.py",
                 "--server.port", str(self.frontend_port)],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                env=self._frontend_env(),
            )

            # Wait a moment for server to start
            time.sleep(5)

            if self.frontend_process.poll() is None:
                print("✅ Frontend server started successfully")
                print(f"   Web interface available at: http://localhost:{self.frontend_port}")
                return True
            else:
                stdout, stderr = self.frontend_process.communicate()
                print("❌ Frontend server failed to start:")
                print(f"   Error: {stderr}")
                return False

        except Exception as e:
            print(f"❌ Error starting frontend server: {e}")
            return False

    def monitor_servers(self):
        """Monitor server processes and handle shutdown"""
        try:
            while self.running:
                if self.backend_process and self.backend_process.poll() is not None:
                    print("❌ Backend server stopped unexpectedly")
                    self.running = False
                    break

                if self.frontend_process and self.frontend_process.poll() is not None:
                    print("❌ Frontend server stopped unexpectedly")
                    self.running = False
                    break

                time.sleep(1)

        except KeyboardInterrupt:
            print("\n🛑 Shutting down servers...")
            self.shutdown()

    def shutdown(self):
        """Shutdown both servers gracefully"""
        self.running = False

        for label, process in (("backend", self.backend_process), ("frontend", self.frontend_process)):
            if process is None:
                continue
            print(f"🛑 Stopping {label} server...")
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()

        print("✅ Servers stopped")

    def run(self):
        """Main method to start both servers"""
        print("🐎 Race Book Ledger - Server Launcher")
        print("=" * 50)

        if not self.check_dependencies():
            return False

        self.check_database()

        print("\n🚀 Starting servers...")

        if not self.start_backend():
            return False

        if not self.start_frontend():
            self.shutdown()
            return False

        print("\n" + "=" * 50)
        print("🎯 Both servers are running!")
        print("\n📱 Access your application:")
        print(f"   Frontend: http://localhost:{self.frontend_port}")
        print(f"   Backend API: http://localhost:{self.api_port}")
        print(f"   API Docs: http://localhost:{self.api_port}/docs")
        print("\n🛑 Press Ctrl+C to stop both servers")
        print("=" * 50)

        # Set up signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, lambda sig, frame: self.shutdown())
        signal.signal(signal.SIGTERM, lambda sig, frame: self.shutdown())

        self.running = True
        self.monitor_servers()

        return True


def main():
    """Main function"""
    launcher = ServerLauncher()
    try:
        launcher.run()
    except KeyboardInterrupt:
        print("\n🛑 Interrupted by user")
        launcher.shutdown()
    except Exception as e:
        print(f"❌ Unexpected error: {e}")
        launcher.shutdown()


if __name__ == "__main__":
    main()
