import os
import sys
from pathlib import Path

import pytest

# Ensure repository root is on sys.path so `import survey_composer...` works locally
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from survey_composer.cache_manager import clear_all_caches  # noqa: E402
from survey_composer.engine.config import EngineSettings  # noqa: E402
from survey_composer.index.catalog import CatalogIndex  # noqa: E402
from survey_composer.models import Metric, Question  # noqa: E402


# (category, theme, metrics, tr text, en text, tags, embedding, sensitivity, quality)
_BASE = [
    ("culture", "belonging", ["loyalty"], "Bu şirkette uzun yıllar çalışmayı planlıyorum",
     "I plan to stay with this company for many years", ["sadakat", "loyalty"], (1.0, 0.0, 0.0, 0.0), 1, 0.9),
    ("culture", "belonging", ["loyalty"], "Şirketimi arkadaşlarıma çalışılacak yer olarak öneririm",
     "I would recommend my company as a place to work", ["sadakat", "loyalty"], (0.9, 0.1, 0.0, 0.0), 0, 0.8),
    ("culture", "belonging", ["commitment"], "Şirketin hedeflerine kendimi bağlı hissediyorum",
     "I feel committed to the company goals", ["bağlılık", "commitment"], (0.8, 0.0, 0.0, 0.2), 1, 0.85),
    ("career", "growth", ["engagement"], "İşimde kendimi geliştirme fırsatı buluyorum",
     "My job gives me opportunities to grow", ["gelişim", "growth"], (0.3, 0.3, 0.0, 0.4), 0, 0.75),
    ("career", "growth", ["motivation"], "Yaptığım iş beni motive ediyor",
     "My work motivates me", ["motivasyon", "motivation"], (0.2, 0.5, 0.0, 0.3), 0, 0.7),
    ("wellbeing", "balance", ["wellbeing"], "İş ve özel hayatım arasında denge kurabiliyorum",
     "I can balance work and private life", ["denge", "balance"], (0.0, 0.2, 0.9, 0.0), 2, 0.8),
    ("wellbeing", "stress", ["wellbeing"], "İş yüküm yönetilebilir düzeyde",
     "My workload is manageable", ["stres", "stress"], (0.0, 0.1, 1.0, 0.0), 3, 0.65),
    ("leadership", "manager", ["leadership"], "Yöneticim bana açık geri bildirim veriyor",
     "My manager gives me clear feedback", ["yönetici", "manager"], (0.0, 0.0, 0.1, 1.0), 1, 0.9),
    ("leadership", "manager", ["recognition"], "Başarılarım takdir ediliyor",
     "My achievements are recognized", ["takdir", "recognition"], (0.2, 0.3, 0.0, 0.7), 1, 0.6),
    ("communication", "information", ["communication"], "Şirket içinde bilgi zamanında paylaşılıyor",
     "Information is shared on time inside the company", ["iletişim", "communication"], (0.1, 0.0, 0.0, 0.9), 0, 0.7),
    ("communication", "information", ["alignment"], "Ekibimin hedefleri şirket stratejisiyle uyumlu",
     "My team goals are aligned with company strategy", ["strateji", "strategy"], (0.4, 0.0, 0.0, 0.6), 0, 0.75),
    ("culture", "pride", ["satisfaction"], "Genel olarak işimden memnunum",
     "Overall I am satisfied with my job", ["memnuniyet", "satisfaction"], (0.3, 1.0, 0.0, 0.0), 0, 0.95),
    ("career", "pay", ["satisfaction"], "Ücretimin adil olduğunu düşünüyorum",
     "I think my pay is fair", ["ücret", "pay"], (0.1, 0.8, 0.1, 0.0), 4, 0.6),
    ("wellbeing", "safety", ["wellbeing"], "Fikirlerimi çekinmeden söyleyebiliyorum",
     "I can speak up without fear", ["güven", "trust"], (0.0, 0.1, 0.6, 0.4), 3, 0.7),
]


def make_question(
    qid,
    language="tr",
    text="",
    category="culture",
    theme="",
    tags=(),
    quality=0.7,
    metrics=(),
    embedding=(1.0, 0.0, 0.0, 0.0),
    sensitivity=0,
    usage=0,
    name="",
):
    return Question(
        id=qid,
        language=language,
        text=text or f"question {qid}",
        category_path=(category,) if category else (),
        theme_path=(theme,) if theme else (),
        tags=frozenset(tags),
        quality_score=quality,
        metric_coverage=frozenset(Metric.parse(m) for m in metrics),
        embedding=tuple(float(x) for x in embedding),
        sensitivity=sensitivity,
        usage_count=usage,
        name=name,
    )


def build_bilingual_catalog():
    out = []
    for i, (cat, theme, metrics, tr, en, tags, emb, sens, quality) in enumerate(_BASE, start=1):
        for lang, text in (("tr", tr), ("en", en)):
            out.append(make_question(
                f"{lang}-{i:02d}", language=lang, text=text, category=cat, theme=theme,
                tags=tags, quality=quality, metrics=metrics, embedding=emb, sensitivity=sens,
            ))
    return out


@pytest.fixture
def question_factory():
    """Factory building Question objects with sensible defaults."""
    return make_question


@pytest.fixture
def bilingual_questions():
    """14 Turkish questions and their 14 English twins across five categories."""
    return build_bilingual_catalog()


@pytest.fixture
def catalog_index(bilingual_questions):
    index = CatalogIndex(vector_backend="numpy")
    index.reload(bilingual_questions, version="v1", strict=True)
    return index


@pytest.fixture
def settings():
    """Default engine settings, independent of the caller's environment."""
    return EngineSettings.from_env({})


@pytest.fixture(autouse=True)
def _clear_caches():
    clear_all_caches()
    yield
    clear_all_caches()


@pytest.fixture(scope="session", autouse=True)
def _disable_tokenizers_parallelism():
    """Force tokenizers to stay single-threaded to avoid fork warnings during tests."""
    prev = os.environ.get("TOKENIZERS_PARALLELISM")
    os.environ["TOKENIZERS_PARALLELISM"] = "false"
    try:
        yield
    finally:
        if prev is None:
            os.environ.pop("TOKENIZERS_PARALLELISM", None)
        else:
            os.environ["TOKENIZERS_PARALLELISM"] = prev
