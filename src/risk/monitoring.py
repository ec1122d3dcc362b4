from datetime import datetime
import threading
from typing import Optional, Dict, Any
import psutil

from utils.logger import TradingLogger


class HeartbeatMonitor:
    """Watches the monitor loop's heartbeat and host resources from a daemon thread.

    The monitor loop calls ``beat`` once per completed cycle. The thread
    samples CPU and memory with psutil and flags the system as WARNING or
    CRITICAL when the loop stops beating.
    """

    def __init__(self, logger: TradingLogger, heartbeat_interval: int = 30,
                 warning_threshold: int = 60,
                 critical_threshold: int = 90):
        self.logger = logger

        self.heartbeat_interval = heartbeat_interval
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold

        self.last_heartbeat: Optional[datetime] = None
        self.cycles: int = 0
        self.last_cycle_seconds: float = 0.0
        self.is_running: bool = False
        self.system_status: str = "INITIALIZING"
        self.monitor_thread: Optional[threading.Thread] = None
        self.system_metrics: Dict[str, Any] = {}
        self._stop = threading.Event()

    def beat(self, cycle_seconds: float = 0.0):
        """Record a completed monitor cycle"""
        self.last_heartbeat = datetime.now()
        self.cycles += 1
        self.last_cycle_seconds = cycle_seconds

    def start_monitoring(self):
        """Start independent monitoring thread"""
        self.logger.info("Starting heartbeat monitor")
        self.is_running = True
        self.system_status = "RUNNING"
        self._stop.clear()

        self.monitor_thread = threading.Thread(
            target=self._monitor_loop,
            daemon=True,
            name='HeartbeatMonitor'
        )
        self.monitor_thread.start()

    def _monitor_loop(self):
        while self.is_running:
            try:
                self._update_system_metrics()
                self._verify_system_health()
            except Exception as e:
                self.logger.error(f"Monitor loop error: {str(e)}")
                self.system_status = "ERROR"
            self._stop.wait(self.heartbeat_interval)

    def _update_system_metrics(self):
        self.system_metrics = {
            'timestamp': datetime.now(),
            'cpu_usage': psutil.cpu_percent(),
            'memory_usage': psutil.virtual_memory().percent,
            'process_rss_mb': psutil.Process().memory_info().rss / (1024 * 1024),
        }

    def seconds_since_heartbeat(self) -> Optional[float]:
        if self.last_heartbeat is None:
            return None
        return (datetime.now() - self.last_heartbeat).total_seconds()

    def _verify_system_health(self):
        status = "RUNNING"

        if self.system_metrics.get('cpu_usage', 0) > 80:
            self.logger.warning(f"High CPU usage: {self.system_metrics['cpu_usage']}%")
            status = "WARNING"
        if self.system_metrics.get('memory_usage', 0) > 80:
            self.logger.warning(f"High memory usage: {self.system_metrics['memory_usage']}%")
            status = "WARNING"

        since = self.seconds_since_heartbeat()
        if since is not None:
            if since > self.critical_threshold:
                status = "CRITICAL"
                self.logger.critical(f"CRITICAL: monitor loop silent for {since:.0f} seconds")
            elif since > self.warning_threshold:
                status = "WARNING"
                self.logger.warning(f"WARNING: monitor loop delayed for {since:.0f} seconds")

        self.system_status = status

    def get_status(self) -> Dict[str, Any]:
        """Get current system status and metrics"""
        since = self.seconds_since_heartbeat()
        return {
            'status': self.system_status,
            'last_heartbeat': self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            'seconds_since_heartbeat': round(since, 1) if since is not None else None,
            'cycles': self.cycles,
            'last_cycle_seconds': round(self.last_cycle_seconds, 3),
            'metrics': {k: v for k, v in self.system_metrics.items() if k != 'timestamp'},
        }

    def stop_monitoring(self):
        """Safely stop the monitor"""
        self.logger.info("Stopping heartbeat monitor")
        self.is_running = False
        self._stop.set()
        if self.monitor_thread:
            self.monitor_thread.join(timeout=5.0)
