import os
import sys
# Add project root to sys.path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from dotenv import load_dotenv
import psutil

# 加载环境变量
load_dotenv()


def free_port(port: int):
    """
    释放被占用的端口 (容器环境跳过)
    """
    if os.getenv("CONTAINER_ENV") == "true":
        return

    try:
        connections = psutil.net_connections()
    except (psutil.AccessDenied, PermissionError):
        # 权限不足时无法枚举连接，直接跳过
        return

    for conn in connections:
        if not conn.laddr or conn.laddr.port != port or not conn.pid:
            continue
        try:
            p = psutil.Process(conn.pid)
            print(f"[DevTools] port {port} is held by {p.name()} (PID: {conn.pid}), terminating...")
            p.terminate()
            p.wait(timeout=3)
            print(f"[DevTools] port {port} released")
        except (psutil.Error, OSError) as e:
            print(f"[DevTools] failed to release port {port}: {e}")


def check_redis_connection():
    """
    仅在 TASK_STORE_BACKEND=redis 时检查连通性
    """
    if os.getenv("TASK_STORE_BACKEND", "memory").lower() != "redis":
        return

    import redis

    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    print(f"[DevTools] checking Redis connection: {redis_url} ...")
    try:
        redis.from_url(redis_url, socket_connect_timeout=2).ping()
        print("[DevTools] Redis connection OK")
    except redis.RedisError as e:
        print(f"[DevTools] Redis connection failed: {e}")
        print("Start Redis or set TASK_STORE_BACKEND=memory in .env (the app falls back to memory)")


def main():
    host = os.getenv("SERVER_HOST", "127.0.0.1")
    port = int(os.getenv("SERVER_PORT", "50002"))

    print("\n" + "=" * 60)
    print("BlockReceipt Task Pipeline - local development server")
    print(f"Address: http://{host}:{port}")
    print("=" * 60 + "\n")

    free_port(port)
    check_redis_connection()

    # 开发环境默认开启 reload；多进程会各自持有一份内存任务表，固定单 worker
    reload_enabled = os.getenv("SERVER_RELOAD", "1") == "1"
    uvicorn.run(
        "blockreceipt.main:app",
        host=host,
        port=port,
        reload=reload_enabled,
        reload_delay=0.3,
        reload_excludes=["logs/*", "*.log", "__pycache__/*", ".git/*", ".venv/*"],
        log_level=os.getenv("SERVER_LOG_LEVEL", "info"),
        access_log=os.getenv("SERVER_ACCESS_LOG", "1") == "1",
        workers=1,
    )


if __name__ == "__main__":
    main()
