"""
Tests for media acquisition, the audio mixer and capture teardown.
"""

import base64
import unittest

import numpy as np

from copilot.errors import NoAudioTrack, PermissionDenied
from copilot.media import (
    AudioMixer,
    MediaAcquisition,
    MediaDevices,
    MediaStream,
    MediaTrack,
    VideoTrack,
    to_mono_float32,
    to_pcm16,
)

PNG = b"\x89PNG\r\n\x1a\nfake"


class FakeDevices(MediaDevices):
    """Hands out fresh tracks and counts device releases."""

    def __init__(self, display_audio=True, display_video=True, mic=True, display_error=None, mic_rate=None):
        self.display_audio = display_audio
        self.display_video = display_video
        self.mic = mic
        self.mic_rate = mic_rate
        self.display_error = display_error
        self.released = []
        self.tracks = []

    def _track(self, kind, label, sample_rate=None):
        def release():
            self.released.append(label)

        if kind == "video":
            track = VideoTrack(label, grabber=lambda: PNG, on_release=release)
        else:
            track = MediaTrack(kind, label, sample_rate=sample_rate or self.sample_rate, on_release=release)
        self.tracks.append(track)
        return track

    async def get_display_media(self, video=True, audio=True):
        if self.display_error is not None:
            raise self.display_error
        tracks = []
        if self.display_video:
            tracks.append(self._track("video", "screen"))
        if self.display_audio:
            tracks.append(self._track("audio", "tab"))
        return MediaStream(tracks)

    async def get_user_media(self, audio=True):
        if not self.mic:
            raise PermissionDenied("Permission denied")
        return MediaStream([self._track("audio", "mic", self.mic_rate)])

    def by_label(self, label):
        return next(t for t in self.tracks if t.label == label)


class TestMediaAcquisition(unittest.IsolatedAsyncioTestCase):

    def make(self, **kwargs):
        self.devices = FakeDevices(**kwargs)
        self.streams = []
        return MediaAcquisition(self.devices, on_stream_available=self.streams.append)

    async def test_mixes_mic_and_tab_audio(self):
        acquisition = self.make()
        mixed = await acquisition.start_capture()

        self.assertEqual(len(mixed.audio_tracks()), 1)
        self.assertEqual(len(mixed.preview_tracks), 1)
        self.assertEqual(len(acquisition.session.mixer.inputs), 2)
        self.assertIs(self.streams[-1], mixed)

    async def test_mic_denied_with_tab_audio_proceeds(self):
        acquisition = self.make(mic=False)
        mixed = await acquisition.start_capture()

        self.assertTrue(acquisition.capturing)
        self.assertEqual(len(acquisition.session.mixer.inputs), 1)
        self.assertEqual(mixed.audio.label, "mixed")

    async def test_no_audio_anywhere_raises_and_releases(self):
        acquisition = self.make(mic=False, display_audio=False)

        with self.assertRaises(NoAudioTrack):
            await acquisition.start_capture()

        self.assertFalse(acquisition.capturing)
        self.assertEqual(self.devices.released, ["screen"])
        self.assertEqual(self.streams, [])

    async def test_display_denied_aborts(self):
        acquisition = self.make(display_error=PermissionDenied("Permission denied"))
        with self.assertRaises(PermissionDenied):
            await acquisition.start_capture()
        self.assertFalse(acquisition.capturing)

    async def test_unexpected_display_failure_is_permission_denied(self):
        acquisition = self.make(display_error=OSError("no screen"))
        with self.assertRaises(PermissionDenied):
            await acquisition.start_capture()

    async def test_stop_capture_is_idempotent(self):
        acquisition = self.make()
        await acquisition.start_capture()

        acquisition.stop_capture()
        acquisition.stop_capture()

        self.assertFalse(acquisition.capturing)
        self.assertEqual(sorted(self.devices.released), ["mic", "screen", "tab"])
        self.assertEqual(self.streams[-1], None)
        self.assertEqual(self.streams.count(None), 1)

    async def test_stop_before_start_is_a_noop(self):
        acquisition = self.make()
        acquisition.stop_capture()
        self.assertFalse(acquisition.external_stop())
        self.assertEqual(self.streams, [])

    async def test_system_ending_the_share_tears_down(self):
        acquisition = self.make()
        await acquisition.start_capture()

        self.devices.by_label("screen").end()

        self.assertFalse(acquisition.capturing)
        self.assertEqual(sorted(self.devices.released), ["mic", "screen", "tab"])
        # A later explicit stop does nothing more
        acquisition.stop_capture()
        self.assertEqual(len(self.devices.released), 3)

    async def test_mixer_failure_releases_acquired_devices(self):
        acquisition = self.make(mic_rate=48000)

        with self.assertRaises(ValueError):
            await acquisition.start_capture()

        self.assertFalse(acquisition.capturing)
        self.assertEqual(sorted(self.devices.released), ["mic", "screen", "tab"])
        self.assertEqual(self.streams, [])

    async def test_loopback_loss_keeps_video_capture_alive(self):
        acquisition = self.make()
        await acquisition.start_capture()

        self.devices.by_label("tab").end()

        self.assertTrue(acquisition.capturing)
        self.assertEqual(acquisition.session.mixer.inputs, [self.devices.by_label("mic")])

    async def test_audio_only_share_ends_with_its_audio(self):
        acquisition = self.make(display_video=False)
        await acquisition.start_capture()

        self.devices.by_label("tab").end()

        self.assertFalse(acquisition.capturing)
        self.assertEqual(sorted(self.devices.released), ["mic", "tab"])

    async def test_restart_releases_previous_session(self):
        acquisition = self.make()
        await acquisition.start_capture()
        await acquisition.start_capture()

        self.assertEqual(sorted(self.devices.released), ["mic", "screen", "tab"])
        self.assertTrue(acquisition.capturing)

    async def test_external_stop(self):
        acquisition = self.make()
        await acquisition.start_capture()
        self.assertTrue(acquisition.external_stop())
        self.assertFalse(acquisition.capturing)

    async def test_screenshot_data_url(self):
        acquisition = self.make()
        self.assertIsNone(await acquisition.take_screenshot())

        await acquisition.start_capture()
        url = await acquisition.take_screenshot()

        self.assertTrue(url.startswith("data:image/png;base64,"))
        self.assertEqual(base64.b64decode(url.split(",", 1)[1]), PNG)


class TestAudioMixer(unittest.TestCase):

    def setUp(self):
        self.mixer = AudioMixer(16000, max_lag_s=0.01)  # 160 samples
        self.out = []
        self.mixer.output.add_listener(self.out.append)
        self.a = MediaTrack("audio", "a", sample_rate=16000)
        self.b = MediaTrack("audio", "b", sample_rate=16000)
        self.mixer.connect(self.a)
        self.mixer.connect(self.b)

    def test_sums_aligned_samples(self):
        self.a.push(np.full(100, 0.25, dtype=np.float32))
        self.assertEqual(self.out, [])
        self.b.push(np.full(100, 0.5, dtype=np.float32))

        self.assertEqual(len(self.out), 1)
        np.testing.assert_allclose(self.out[0], np.full(100, 0.75))

    def test_stalled_source_counts_as_silence(self):
        self.a.push(np.full(200, 0.25, dtype=np.float32))
        self.assertEqual(len(self.out), 1)
        np.testing.assert_allclose(self.out[0], np.full(200, 0.25))

    def test_ended_source_is_disconnected(self):
        self.b.end()
        self.a.push(np.full(10, 0.1, dtype=np.float32))
        self.assertEqual(self.mixer.inputs, [self.a])
        self.assertEqual(len(self.out), 1)

    def test_rejects_mismatched_rate(self):
        with self.assertRaises(ValueError):
            self.mixer.connect(MediaTrack("audio", "c", sample_rate=48000))


class TestTrack(unittest.TestCase):

    def test_release_happens_once(self):
        released = []
        track = MediaTrack("audio", "mic", on_release=lambda: released.append(1))
        ended = []
        track.add_ended_listener(ended.append)

        track.stop()
        track.stop()
        track.end()

        self.assertEqual(released, [1])
        self.assertEqual(ended, [])
        self.assertFalse(track.live)


class TestSampleConversion(unittest.TestCase):

    def test_left_channel_and_int16(self):
        stereo = np.array([[16384, -32768], [-16384, 0]], dtype=np.int16)
        np.testing.assert_allclose(to_mono_float32(stereo), [0.5, -0.5])

    def test_pcm16_clips(self):
        pcm = to_pcm16(np.array([2.0, -2.0, 0.0], dtype=np.float32))
        self.assertEqual(np.frombuffer(pcm, dtype="<i2").tolist(), [32767, -32767, 0])


if __name__ == "__main__":
    unittest.main()
