"""
Tests for cloudimager core orchestration.

This module tests the CloudImager preset registry, option handling, outlet
resolution and the complete process workflow from input images to stored
variant references, both with fakes and end to end with Pillow.
"""

import asyncio
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from cloudimager.config import OutputDefaults, S3Settings, Settings
from cloudimager.core.concurrency import IMAGE_CONCURRENCY
from cloudimager.core.imager import CloudImager, ImagerOptions
from cloudimager.core.outlets import LocalDirectoryOutlet, ObjectStorageOutlet
from cloudimager.core.processors import operation, smart_crop
from cloudimager.errors import (
    TransformStepError,
    UnknownPresetError,
    UnsupportedFormatError,
)
from cloudimager.models import OutletContext


def _upload(name, path=None):
    return {"path": path or f"/uploads/{name}", "name": name, "type": "image/jpeg"}


class TestPresetRegistry:
    """Test preset registration on CloudImager."""

    def test_register_named_preset(self, imager):
        """Test presets are stored under their name."""
        imager.preset("thumbs", {"small": operation("resize", 64)}, keep_original=False)

        assert imager.has_preset("thumbs")
        preset = imager.get_preset("thumbs")
        assert preset.name == "thumbs"
        assert preset.keep_original is False
        assert len(preset.variants["small"]) == 1

    def test_register_default_preset_positionally(self, imager):
        """Test the variants-only form registers the default preset."""
        imager.preset({"sepia": operation("sepia")}, keep_original=False)

        assert imager.has_preset("default")
        assert imager.get_preset("default").keep_original is False

    def test_keep_original_defaults_to_true(self, imager):
        """Test originals are kept unless disabled."""
        imager.preset("thumbs", {"small": operation("resize", 64)})

        assert imager.get_preset("thumbs").keep_original is True

    def test_reregistering_replaces(self, imager):
        """Test registering a name again replaces the preset."""
        imager.preset("thumbs", {"small": operation("resize", 64)})
        imager.preset("thumbs", {"large": operation("resize", 1024)})

        assert list(imager.get_preset("thumbs").variants) == ["large"]

    def test_missing_variants(self, imager):
        """Test a name without variants is rejected."""
        with pytest.raises(ValueError, match="needs variants"):
            imager.preset("thumbs")

    def test_unknown_preset_lookup(self, imager):
        """Test looking up an unregistered preset."""
        with pytest.raises(UnknownPresetError, match='Non-existing preset "nope"'):
            imager.get_preset("nope")


class TestOptions:
    """Test CloudImager configuration properties."""

    def test_defaults(self):
        """Test a fresh orchestrator has the documented defaults."""
        imager = CloudImager()

        assert imager.default_outlet is None
        assert imager.upload_directory is None
        assert imager.file_name_format == "{{uid}}{{prefixedVariant}}{{mimeExtension}}"

    def test_properties_read_and_write_options(self, fake_manipulator):
        """Test properties are backed by the orchestrator's options model."""
        imager = CloudImager(ImagerOptions())

        imager.upload_directory = "output"
        imager.image_manipulator = fake_manipulator

        assert imager.options.upload_directory == "output"
        assert imager.options.image_manipulator is fake_manipulator

    def test_shared_options_are_copied(self):
        """Test orchestrators built from one options object do not affect each other."""
        options = ImagerOptions(upload_directory="shared")

        first = CloudImager(options, upload_directory="first")
        second = CloudImager(options)
        second.file_name_format = "{{uid}}"

        assert options.upload_directory == "shared"
        assert options.file_name_format == "{{uid}}{{prefixedVariant}}{{mimeExtension}}"
        assert first.upload_directory == "first"
        assert second.upload_directory == "shared"
        assert first.file_name_format != "{{uid}}"

    def test_keyword_overrides(self):
        """Test keyword arguments override options."""
        imager = CloudImager(file_name_format="{{variant}}{{mimeExtension}}")

        assert imager.file_name_format == "{{variant}}{{mimeExtension}}"

    def test_unknown_option(self):
        """Test unknown keyword options are rejected."""
        with pytest.raises(TypeError, match="Unknown CloudImager option: color"):
            CloudImager(color="red")

    def test_instances_are_independent(self):
        """Test orchestrators do not share state."""
        first, second = CloudImager(), CloudImager()
        first.preset("thumbs", {"small": operation("resize", 64)})
        first.upload_directory = "a"

        assert not second.has_preset("thumbs")
        assert second.upload_directory is None


class TestFormatFileName:
    """Test template resolution on CloudImager."""

    def test_resolution_order(self, imager, sample_descriptor):
        """Test explicit, preset and orchestrator templates in that order."""
        imager.file_name_format = "imager{{mimeExtension}}"
        imager.preset("named", {"a": operation("flip")}, file_name_format="preset-{{variant}}")
        imager.preset("plain", {"a": operation("flip")})

        named = OutletContext(image=sample_descriptor, preset="named", variant="a")
        plain = OutletContext(image=sample_descriptor, preset="plain", variant="a")

        assert imager.format_file_name("explicit", named) == "explicit"
        assert imager.format_file_name(None, named) == "preset-a"
        assert imager.format_file_name(None, plain) == "imager.jpg"

    def test_custom_formatter(self, imager, sample_descriptor):
        """Test the formatter can be replaced per orchestrator."""
        calls = []

        def formatter(template, context):
            calls.append(template)
            return "custom"

        imager.file_name_formatter = formatter
        context = OutletContext(image=sample_descriptor, preset="p", variant="a")

        assert imager.format_file_name("{{uid}}", context) == "custom"
        assert calls == ["{{uid}}"]


class TestResolveOutlet:
    """Test outlet selection."""

    @pytest.fixture
    def preset(self, imager):
        imager.preset("p", {"a": operation("flip")})
        return imager.get_preset("p")

    def test_explicit_outlet_wins(self, imager, preset, recording_outlet):
        """Test an explicit outlet beats every default."""
        imager.default_outlet = MagicMock()

        assert imager.resolve_outlet(recording_outlet, preset) is recording_outlet

    def test_preset_outlet_before_default(self, imager, recording_outlet):
        """Test the preset outlet beats the orchestrator default."""
        imager.preset("p", {"a": operation("flip")}, outlet=recording_outlet)
        imager.default_outlet = MagicMock()

        assert imager.resolve_outlet(None, imager.get_preset("p")) is recording_outlet

    def test_default_outlet(self, imager, preset, recording_outlet):
        """Test the orchestrator default is used next."""
        imager.default_outlet = recording_outlet

        assert imager.resolve_outlet(None, preset) is recording_outlet

    def test_local_outlet_fallback(self, imager, preset):
        """Test a local directory outlet is built when nothing is configured."""
        outlet = imager.resolve_outlet(None, preset)

        assert isinstance(outlet, LocalDirectoryOutlet)
        assert outlet.imager is imager

    def test_directory_path_shorthand(self, imager, preset, temp_directory):
        """Test directory paths become local directory outlets."""
        outlet = imager.resolve_outlet(str(temp_directory), preset)

        assert isinstance(outlet, LocalDirectoryOutlet)
        assert outlet.resolve_directory() == temp_directory

    def test_non_callable_outlet(self, imager, preset):
        """Test other objects are rejected."""
        with pytest.raises(TypeError, match="Outlet must be callable"):
            imager.resolve_outlet(42, preset)

    def test_object_storage_outlet_factory(self, imager):
        """Test the object storage factory binds the orchestrator."""
        client = MagicMock(provider="amazon", protocol="https://", region=None)
        client.servers_url = "s3.example.com"

        outlet = imager.object_storage_outlet(client, "media", include_size=True)

        assert isinstance(outlet, ObjectStorageOutlet)
        assert outlet.imager is imager
        assert outlet.include_size is True


class TestProcess:
    """Test CloudImager.process with fakes."""

    @pytest.mark.asyncio
    async def test_unknown_preset_before_any_work(self, imager, fake_manipulator):
        """Test unknown presets fail before the backend is touched."""
        with pytest.raises(UnknownPresetError):
            await imager.process("cat.jpg", "missing")

        assert fake_manipulator.handles == []

    @pytest.mark.asyncio
    async def test_single_image_result_is_unwrapped(self, imager, recording_outlet):
        """Test a single input returns its variant mapping directly."""
        imager.preset("p", {"a": operation("flip"), "b": operation("flop")})

        result = await imager.process(_upload("cat.jpg"), "p", recording_outlet)

        assert result == {
            "a": "cat.jpg:a",
            "b": "cat.jpg:b",
            "original": "cat.jpg:original",
        }

    @pytest.mark.asyncio
    async def test_list_of_one_stays_a_list(self, imager, recording_outlet):
        """Test collections keep their shape even with one element."""
        imager.preset("p", {"a": operation("flip")}, keep_original=False)

        result = await imager.process([_upload("cat.jpg")], "p", recording_outlet)

        assert result == [{"a": "cat.jpg:a"}]

    @pytest.mark.asyncio
    async def test_any_iterable_is_a_batch(self, imager, recording_outlet):
        """Test generators and other iterables are processed as batches."""
        imager.preset("p", {"a": operation("flip")}, keep_original=False)

        result = await imager.process(
            (_upload(f"{index}.jpg") for index in range(3)), "p", recording_outlet
        )

        assert result == [{"a": f"{index}.jpg:a"} for index in range(3)]

    @pytest.mark.asyncio
    async def test_path_objects_are_single_images(
        self, imager, recording_outlet, temp_directory
    ):
        """Test paths and upload mappings are one image, not a collection."""
        imager.preset("p", {"a": operation("flip")}, keep_original=False)

        assert await imager.process(temp_directory / "cat.jpg", "p", recording_outlet) == {
            "a": "cat.jpg:a"
        }

    @pytest.mark.asyncio
    async def test_default_preset_and_outlet_shorthand(self, imager, recording_outlet):
        """Test an outlet may be passed in place of the preset name."""
        imager.preset({"a": operation("flip")}, keep_original=False)

        result = await imager.process(_upload("cat.jpg"), recording_outlet)

        assert result == {"a": "cat.jpg:a"}
        assert recording_outlet.calls[0][1].preset == "default"

    @pytest.mark.asyncio
    async def test_default_outlet_used(self, imager, recording_outlet):
        """Test the orchestrator default outlet is used when none is given."""
        imager.preset({"a": operation("flip")}, keep_original=False)
        imager.default_outlet = recording_outlet

        assert await imager.process(_upload("cat.jpg")) == {"a": "cat.jpg:a"}

    @pytest.mark.asyncio
    async def test_batch_order_preserved(
        self, manipulator_factory, recording_outlet, pause_step
    ):
        """Test results follow input order despite differential latency."""
        manipulator = manipulator_factory(
            delays={"/uploads/0.jpg": 0.08, "/uploads/1.jpg": 0.0,
                    "/uploads/2.jpg": 0.05, "/uploads/3.jpg": 0.01}
        )
        imager = CloudImager(image_manipulator=manipulator)

        async def inspect_size(handle):
            await handle.size()

        imager.preset("p", {"a": [inspect_size, pause_step]}, keep_original=False)
        images = [_upload(f"{index}.jpg") for index in range(4)]

        result = await imager.process(images, "p", recording_outlet)

        assert result == [{"a": f"{index}.jpg:a"} for index in range(4)]
        completion = [context.image.name for _, context in recording_outlet.calls]
        assert completion != ["0.jpg", "1.jpg", "2.jpg", "3.jpg"]

    @pytest.mark.asyncio
    async def test_image_concurrency_bounded(
        self, imager, fake_manipulator, recording_outlet, pause_step
    ):
        """Test at most two images are processed at once."""
        imager.preset("p", {"a": pause_step}, keep_original=False)

        await imager.process([_upload(f"{i}.jpg") for i in range(5)], "p", recording_outlet)

        assert fake_manipulator.peak_open_handles == IMAGE_CONCURRENCY == 2

    @pytest.mark.asyncio
    async def test_failure_short_circuits_batch(
        self, imager, fake_manipulator, recording_outlet, pause_step
    ):
        """Test a failing step in one image fails the whole call."""

        def fail_for_second_image(handle):
            if handle.path == "/uploads/2.jpg":
                raise RuntimeError("corrupt image")
            return handle

        imager.preset(
            "p",
            {
                "a": [pause_step, operation("flip")],
                "b": [operation("flop"), fail_for_second_image],
            },
            keep_original=False,
        )
        images = [_upload(f"{index}.jpg") for index in (1, 2, 3)]

        with pytest.raises(TransformStepError, match="corrupt image") as exc_info:
            await imager.process(images, "p", recording_outlet)

        assert exc_info.value.variant == "b"
        assert fake_manipulator.open_handles == 0

    @pytest.mark.asyncio
    async def test_unsupported_image_fails_batch(self, imager, recording_outlet):
        """Test an unsupported input fails the call."""
        imager.preset("p", {"a": operation("flip")})

        with pytest.raises(UnsupportedFormatError):
            await imager.process([_upload("ok.jpg"), "notes.txt"], "p", recording_outlet)

    @pytest.mark.asyncio
    async def test_result_transformator(self, imager, recording_outlet):
        """Test results pass through a custom transformator."""
        seen = []

        def transformator(results, preset_name, is_single):
            seen.append((preset_name, is_single))
            return {"count": len(results)}

        imager.result_transformator = transformator
        imager.preset("p", {"a": operation("flip")})

        result = await imager.process([_upload("a.jpg"), _upload("b.jpg")], "p", recording_outlet)

        assert result == {"count": 2}
        assert seen == [("p", False)]

    @pytest.mark.asyncio
    async def test_async_result_transformator(self, imager, recording_outlet):
        """Test coroutine transformators are awaited."""

        async def transformator(results, preset_name, is_single):
            await asyncio.sleep(0)
            return [sorted(result) for result in results]

        imager.result_transformator = transformator
        imager.preset("p", {"a": operation("flip")})

        assert await imager.process(_upload("a.jpg"), "p", recording_outlet) == [
            ["a", "original"]
        ]


class TestFromSettings:
    """Test building an orchestrator from configuration."""

    def test_local_settings(self, temp_directory):
        """Test local settings configure the upload directory and outlet."""
        settings = Settings(
            defaults=OutputDefaults(
                upload_directory=temp_directory,
                file_name_format="{{variant}}{{mimeExtension}}",
                return_type="absolute",
            )
        )

        imager = CloudImager.from_settings(settings)

        assert imager.upload_directory == temp_directory
        assert imager.file_name_format == "{{variant}}{{mimeExtension}}"
        assert isinstance(imager.default_outlet, LocalDirectoryOutlet)
        assert imager.default_outlet.return_type == "absolute"

    def test_s3_settings(self):
        """Test S3 settings configure an object storage default outlet."""
        settings = Settings(
            s3=S3Settings(
                bucket="media",
                region="eu-west-1",
                access_key_id="key",
                secret_access_key="secret",
                upload_directory="variants",
            )
        )

        with patch("cloudimager.core.imager.S3StorageClient") as mock_client_class:
            mock_client = mock_client_class.return_value
            mock_client.provider = "amazon"
            mock_client.protocol = "https://"
            mock_client.region = "eu-west-1"

            imager = CloudImager.from_settings(settings)

        mock_client_class.assert_called_once_with(
            region="eu-west-1",
            access_key_id="key",
            secret_access_key="secret",
            endpoint_url=None,
        )
        outlet = imager.default_outlet
        assert isinstance(outlet, ObjectStorageOutlet)
        assert outlet.container == "media"
        assert outlet.upload_directory == "variants"
        assert outlet.base_url == "https://s3-eu-west-1.amazonaws.com/media/"
        assert imager.upload_directory is None


class TestEndToEnd:
    """Process real images with Pillow and the local directory outlet."""

    @pytest.mark.asyncio
    async def test_square_preset(self, sample_jpeg, temp_directory):
        """Test the square preset writes a 100x100 cat_square.jpg."""
        imager = CloudImager(file_name_format="{{basename}}{{prefixedVariant}}{{mimeExtension}}")
        imager.preset("square", {"square": smart_crop(100, 100)}, keep_original=False)
        outlet = imager.local_directory_outlet(
            upload_directory="output", cwd=temp_directory
        )

        result = await imager.process(str(sample_jpeg), "square", outlet)

        assert list(result) == ["square"]
        assert result["square"].endswith("_square.jpg")
        assert result["square"] == "output/cat_square.jpg"
        with Image.open(temp_directory / result["square"]) as image:
            assert image.size == (100, 100)
            assert image.format == "JPEG"

    @pytest.mark.asyncio
    async def test_example_preset_with_sizes(self, sample_jpeg, sample_png, temp_directory):
        """Test several variants, kept originals and size reporting."""
        imager = CloudImager(
            upload_directory=temp_directory / "output",
            file_name_format="{{basename}}{{prefixedVariant}}{{mimeExtension}}",
        )
        imager.preset(
            {
                "square": smart_crop(40, 40),
                "sepia": operation("sepia"),
                "pop": [
                    operation("colorize", 10, -20, 25),
                    operation("blur", 2),
                    operation("contrast", "+4"),
                ],
            }
        )
        imager.default_outlet = imager.local_directory_outlet(
            cwd=temp_directory, return_type="url", include_size=True
        )

        results = await imager.process([sample_jpeg, sample_png])

        cat, logo = results
        assert set(cat) == {"square", "sepia", "pop", "original"}
        assert cat["square"].url == "/output/cat_square.jpg"
        assert (cat["square"].size.width, cat["square"].size.height) == (40, 40)
        assert cat["original"].url == "/output/cat.jpg"
        assert (cat["original"].size.width, cat["original"].size.height) == (200, 100)
        assert logo["sepia"].url == "/output/logo_sepia.png"
        assert Path(temp_directory / "output" / "logo_pop.png").is_file()
