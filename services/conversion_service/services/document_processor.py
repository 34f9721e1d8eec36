import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import List
import logging

from ..errors import BackendFailure
from ..models import AdapterId, OperationKind, OutputArtifact
from .backend import BackendAdapter, TransformRequest

logger = logging.getLogger(__name__)

ENGINE_FAILURE_MESSAGE = "Conversion engine unavailable or conversion rejected"

# LibreOffice export filters where the bare extension is ambiguous
EXPORT_FILTERS = {
    'txt': 'txt:Text',
    'docx': 'docx:MS Word 2007 XML',
    'doc': 'doc:MS Word 97',
    'csv': 'csv:Text - txt - csv (StarCalc)',
}


class DocumentProcessor(BackendAdapter):
    """Office document conversion through a headless LibreOffice process.

    The engine is a black box: any problem starting it, a non-zero exit, a
    timeout or a missing output file all surface as the same BackendFailure.
    """

    adapter_id = AdapterId.OFFICE

    def build_command(self, input_path: Path, output_dir: Path, request: TransformRequest) -> List[str]:
        cmd = [
            self.settings.soffice_path,
            '--headless',
            '--norestore',
            # Separate profile per run so concurrent conversions do not collide
            f'-env:UserInstallation={(output_dir / "profile").as_uri()}',
        ]

        if request.source_format == 'pdf':
            cmd.append('--infilter=writer_pdf_import')

        cmd.extend([
            '--convert-to', EXPORT_FILTERS.get(request.target_format, request.target_format),
            '--outdir', str(output_dir),
            str(input_path)
        ])
        return cmd

    async def transform(self, request: TransformRequest) -> OutputArtifact:
        if request.operation != OperationKind.CONVERT:
            raise BackendFailure(f"Office backend cannot perform '{request.operation.value}'")

        source = await self._read(request.input_ref)

        Path(self.settings.temp_dir).mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix='office_', dir=self.settings.temp_dir))

        try:
            input_path = work_dir / f"input.{request.source_format}"
            await asyncio.to_thread(input_path.write_bytes, source)

            data = await self._run(input_path, work_dir, request)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        filename = self._output_filename('converted', request.target_format)
        logger.info(f"Office conversion {request.source_format} -> {request.target_format} produced {filename}")
        return await self._save(data, filename, format=request.target_format)

    async def _run(self, input_path: Path, work_dir: Path, request: TransformRequest) -> bytes:
        cmd = self.build_command(input_path, work_dir, request)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            logger.error(f"Could not start LibreOffice ({self.settings.soffice_path}): {str(e)}")
            raise BackendFailure(ENGINE_FAILURE_MESSAGE)

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.settings.office_timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"LibreOffice timed out after {self.settings.office_timeout_seconds}s")
            raise BackendFailure(ENGINE_FAILURE_MESSAGE)

        if process.returncode != 0:
            logger.error(f"LibreOffice error ({process.returncode}): {stderr.decode(errors='replace')}")
            raise BackendFailure(ENGINE_FAILURE_MESSAGE)

        output_path = work_dir / f"{input_path.stem}.{request.target_format}"
        if not output_path.is_file():
            logger.error(f"LibreOffice produced no output: {stdout.decode(errors='replace')}")
            raise BackendFailure(ENGINE_FAILURE_MESSAGE)

        return await asyncio.to_thread(output_path.read_bytes)
