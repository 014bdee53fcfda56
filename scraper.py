# Kindle Cloud Reader Capture
# Copyright (C) 2018 lfasmpao
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.
import atexit
import logging
import re
import signal
import subprocess
import sys
import threading
import time

from selenium import webdriver
from selenium.common.exceptions import (
    InvalidSessionIdException,
    JavascriptException,
    NoSuchWindowException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from webdriver_manager.chrome import ChromeDriverManager

from capture_session import SUPPORTED_HOST, SurfaceUnavailable, TransportError

logger = logging.getLogger(__name__)

SEND_SCRIPT = """
    var callback = arguments[arguments.length - 1];
    var helper = window.__kindleCapture;
    if (!helper) { callback(null); return; }
    helper.handle(arguments[0]).then(callback, function () { callback(null); });
"""


def url_checker(url):
    """
       This checks the url format
       :param url Unified Resource Locator
       :rtype: bool
       :return True for a Kindle Cloud Reader url
    """
    url_check_regex = re.compile(
        r'^(?:http)s?://'  # http:// or https://
        r'(?:(?:[A-Z0-9](?:[A-Z0-9-]{0,61}[A-Z0-9])?\.)+(?:[A-Z]{2,6}\.?|[A-Z0-9-]{2,}\.?)|'  # domain...
        r'localhost|'  # localhost
        r'\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})'  # ...or ip
        r'(?::\d+)?'  # port
        r'(?:/?|[/?]\S+)$', re.IGNORECASE)  # url check regex
    if re.match(url_check_regex, url or "") is not None:
        return SUPPORTED_HOST in url
    return False


def _window_gone(error):
    if isinstance(error, (NoSuchWindowException, InvalidSessionIdException)):
        return True
    text = str(error).lower()
    return "not reachable" in text or "disconnected" in text or "target window already closed" in text


class ReaderSurface:
    def __init__(self, url, driver_location=None, wait_time=15, headless=True, user_data_dir=None):
        """
        This starts a selenium session on the reader
        :param url Kindle Cloud Reader url
        :type url string
        :param driver_location chrome driver path
        :type driver_location string
        :param user_data_dir Chrome profile to reuse, keeps the Amazon login between runs
        """

        chrome_options = Options()
        if headless:
            chrome_options.add_argument("--headless=new")
        chrome_options.add_argument("--window-size=1600,1200")
        # Anti-detection flags to appear more like a real browser
        chrome_options.add_argument("--disable-blink-features=AutomationControlled")
        chrome_options.add_experimental_option("excludeSwitches", ["enable-automation"])
        chrome_options.add_experimental_option('useAutomationExtension', False)
        if user_data_dir:
            chrome_options.add_argument(f"--user-data-dir={user_data_dir}")

        self.wait_load_time = wait_time
        self.url = url
        if driver_location:
            service = Service(executable_path=driver_location)
        else:
            service = Service(ChromeDriverManager().install())
        self.driver_obj = webdriver.Chrome(service=service, options=chrome_options)
        self._lock = threading.RLock()

        # Register cleanup handlers; Ctrl-C is left to the caller so a capture can stop cleanly
        atexit.register(self._cleanup)
        self._original_sigterm = signal.signal(signal.SIGTERM, self._signal_handler)

    def _cleanup(self):
        """Ensure ChromeDriver is properly terminated."""
        try:
            if getattr(self, 'driver_obj', None):
                self.driver_obj.quit()
                self.driver_obj = None
        except WebDriverException:
            pass
        # Kill any orphaned chromedriver processes
        try:
            subprocess.run(['pkill', '-f', 'chromedriver'], capture_output=True, timeout=5)
        except (OSError, subprocess.SubprocessError):
            pass

    def _signal_handler(self, signum, frame):
        """Handle termination signals gracefully."""
        print(f"\nReceived signal {signum}, cleaning up...")
        self._cleanup()
        sys.exit(0)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.clean()
        return False

    def _driver(self):
        if self.driver_obj is None:
            raise SurfaceUnavailable("The browser has been closed")
        return self.driver_obj

    def load_url(self):
        """
        This will load the url on the selenium driver.
        Waits for the reader to render something instead of a fixed time.
        """
        driver = self._driver()
        driver.get(self.url)

        max_wait = self.wait_load_time
        poll_interval = 0.5
        waited = 0

        logger.info("Waiting for the reader to load (max %ss)...", max_wait)

        while waited < max_wait:
            ready = driver.execute_script("""
                var canvases = document.querySelectorAll('canvas');
                for (var i = 0; i < canvases.length; i++) {
                    var rect = canvases[i].getBoundingClientRect();
                    if (rect.width > 100 && rect.height > 100) return true;
                }
                var imgs = document.querySelectorAll('img');
                for (var i = 0; i < imgs.length; i++) {
                    var rect = imgs[i].getBoundingClientRect();
                    if (imgs[i].complete && rect.width > 300 && rect.height > 300) return true;
                }
                return !!document.querySelector('#kr-renderer, #KindleReaderIFrame, [class*="kg-full-page"]');
            """)

            if ready:
                logger.info("Reader loaded in %.1fs", waited)
                time.sleep(0.5)
                return True

            time.sleep(poll_interval)
            waited += poll_interval

        logger.warning("Timeout after %ss, proceeding anyway...", max_wait)
        return False

    def get_title(self):
        """
        This parses the book title from the window title
        :rtype: string
        """
        title = str(self._driver().title).split("|")[0].strip()
        title = re.sub(r'[<>:"/\\|?*\x00-\x1F]+', '_', title)
        return title or "kindle-book"

    @property
    def surface_id(self):
        with self._lock:
            driver = self._driver()
            try:
                return f"{driver.session_id}:{driver.current_window_handle}"
            except WebDriverException as e:
                raise SurfaceUnavailable(f"Reader window is not available: {e}") from e

    @property
    def current_url(self):
        with self._lock:
            try:
                return self._driver().current_url
            except WebDriverException as e:
                raise SurfaceUnavailable(f"Reader window is not available: {e}") from e

    def active_surface(self):
        """The surface to capture from, or None once the browser is gone."""
        if self.driver_obj is None:
            return None
        try:
            self.current_url
        except SurfaceUnavailable:
            return None
        return self

    def _command(self, what, fn, *args):
        with self._lock:
            try:
                return fn(*args)
            except WebDriverException as e:
                if _window_gone(e):
                    raise SurfaceUnavailable(f"Reader window closed during {what}") from e
                raise TransportError(f"{what} failed: {e.msg or e}") from e

    def send(self, message, timeout):
        """
        Deliver a message to the injected page helper.
        :rtype: dict or None if the helper did not answer in time
        """
        driver = self._driver()

        def run():
            driver.set_script_timeout(timeout)
            return driver.execute_async_script(SEND_SCRIPT, message)

        try:
            return self._command(message.get("action", "message"), run)
        except TransportError as e:
            if isinstance(e.__cause__, (TimeoutException, JavascriptException)):
                logger.debug("%s", e)
            else:
                logger.warning("%s", e)
            return None

    def inject(self, script):
        self._command("script injection", self._driver().execute_script, script)

    def set_zoom(self, factor):
        self._command("zoom", self._driver().execute_cdp_cmd, "Emulation.setDeviceMetricsOverride", {
            "width": 0, "height": 0, "deviceScaleFactor": factor, "mobile": False,
        })

    def reset_zoom(self):
        self._command("zoom reset", self._driver().execute_cdp_cmd, "Emulation.clearDeviceMetricsOverride", {})

    def capture_visible(self):
        """
        Screenshot of the visible viewport
        :rtype: bytes
        :return PNG data
        """
        return self._command("capture", self._driver().get_screenshot_as_png)

    def keep_alive(self):
        """Touch the session so an idle timeout on the driver side does not reap it."""
        try:
            self.current_url
        except SurfaceUnavailable:
            pass

    def clean(self):
        """Close the current selenium session."""
        self._cleanup()
        if hasattr(self, '_original_sigterm'):
            signal.signal(signal.SIGTERM, self._original_sigterm)
