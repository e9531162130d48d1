import time
import threading


class RateLimiter:
    def __init__(self, clock=time.time):
        self.windows = {}
        self.lock = threading.Lock()
        self.clock = clock

    def allow(self, key: str, max_req: int, window: int) -> bool:
        with self.lock:
            now = self.clock()
            # 只保留窗口内的请求时间戳
            hits = [t for t in self.windows.get(key, []) if now - t < window]
            if len(hits) < max_req:
                hits.append(now)
                self.windows[key] = hits
                return True
            self.windows[key] = hits
            return False

    def reset(self):
        with self.lock:
            self.windows.clear()


rate_limiter = RateLimiter()
