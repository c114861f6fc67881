import subprocess


def run_command(command):
    """Run a shell command and print output"""
    print(f"Executing: {command}")

    process = subprocess.Popen(
        command,
        shell=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True
    )

    # Stream output in real time
    for line in process.stdout:
        print(line.rstrip())

    if process.wait() != 0:
        print(f"Server exited with code {process.returncode}")
        return False

    return True


# Run the FastAPI server
print("Starting Shadow IT Sync API...")
run_command("python -m uvicorn src.api.main:create_app --factory --host 0.0.0.0 --port 8001")
