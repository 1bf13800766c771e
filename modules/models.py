"""
报告数据模型
存储文档字段名沿用 camelCase（namaKegiatan、uraianKegiatan ...），Python 侧使用 snake_case
"""
from typing import Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

T = TypeVar("T")

ReportStatus = Literal["draft", "submitted", "approved"]
AttachmentKind = Literal["SK", "ST", "UNDANGAN", "DAFTAR_HADIR", "BERITA_ACARA", "LAINNYA"]


class DocumentModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ActivityDay(DocumentModel):
    """一天的活动记录（uraianKegiatan 的元素）"""
    hari: int = 1
    tanggal: str = ""
    deskripsi: str = ""
    gambar: List[Optional[str]] = Field(default_factory=list)


class Executor(DocumentModel):
    nama: str = ""
    jabatan: str = ""
    nip: Optional[str] = None


class Attachment(DocumentModel):
    nama: str
    jenis: AttachmentKind = "LAINNYA"
    file: Optional[str] = None


class Report(DocumentModel):
    """活动报告"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: Optional[str] = None
    nama_kegiatan: str = ""
    pendahuluan: str = ""
    waktu_mulai: str = ""
    waktu_selesai: str = ""
    tempat_pelaksanaan: str = ""
    pelaksana: List[Executor] = Field(default_factory=list)
    sumber_pendanaan: str = ""
    uraian_kegiatan: List[ActivityDay] = Field(default_factory=list)
    rekomendasi: str = ""
    ucapan_terimakasih: str = ""
    lampiran: Optional[List[Attachment]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    status: ReportStatus = "draft"
    created_by: Optional[str] = None


class ReportFormInput(DocumentModel):
    """表单形态：只编辑第一天"""
    nama_kegiatan: str = ""
    tanggal: str = ""
    waktu_mulai: str = ""
    waktu_selesai: str = ""
    lokasi: str = ""
    deskripsi: str = ""
    penanggung_jawab: str = ""
    jabatan_penanggung_jawab: str = ""
    nip_penanggung_jawab: Optional[str] = None
    pendahuluan: str = ""
    sumber_pendanaan: str = ""
    rekomendasi: str = ""
    ucapan_terimakasih: str = ""
    gambar_preview: List[Optional[str]] = Field(default_factory=list)


class GalleryImage(DocumentModel):
    src: str
    laporan_id: str = ""
    nama_kegiatan: str = ""
    tanggal: str = ""
    hari: int = 1


class ServiceResponse(BaseModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    message: Optional[str] = None
    warning: Optional[str] = None
