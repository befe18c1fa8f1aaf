"""Demo accounts, stores, categories and products for a fresh marketplace."""

from __future__ import annotations

DEMO_USERS = [
    {"email": "buyer@pasarku.test", "full_name": "Buyer Test Account", "phone": "081234567890", "role": "buyer"},
    {"email": "seller@pasarku.test", "full_name": "Seller Test Account", "phone": "081234567891", "role": "seller"},
    {"email": "dapur@pasarku.test", "full_name": "Rina Kusuma", "phone": "081234567892", "role": "seller"},
    {"email": "gowes@pasarku.test", "full_name": "Bayu Pratama", "phone": "081234567893", "role": "seller"},
]

DEMO_CATEGORIES = [
    {"name": "Elektronik", "slug": "elektronik"},
    {"name": "Audio", "slug": "elektronik-audio", "parent": "elektronik"},
    {"name": "Aksesoris Komputer", "slug": "elektronik-aksesoris-komputer", "parent": "elektronik"},
    {"name": "Dapur", "slug": "dapur"},
    {"name": "Peralatan Masak", "slug": "dapur-peralatan-masak", "parent": "dapur"},
    {"name": "Olahraga", "slug": "olahraga"},
    {"name": "Sepeda", "slug": "olahraga-sepeda", "parent": "olahraga"},
]

DEMO_STORES = [
    {
        "owner_email": "seller@pasarku.test",
        "store_name": "Toko Serba Ada",
        "description": "Menjual segala kebutuhan anda dengan harga terbaik.",
        "city": "Jakarta Selatan",
        "province": "DKI Jakarta",
    },
    {
        "owner_email": "dapur@pasarku.test",
        "store_name": "Dapur Rina",
        "description": "Peralatan masak pilihan untuk dapur rumah.",
        "city": "Bandung",
        "province": "Jawa Barat",
    },
    {
        "owner_email": "gowes@pasarku.test",
        "store_name": "Gowes Bayu",
        "description": "Sepeda dan perlengkapan gowes harian.",
        "city": "Yogyakarta",
        "province": "DI Yogyakarta",
    },
]

DEMO_PRODUCTS = [
    {
        "owner_email": "seller@pasarku.test",
        "category": "elektronik-audio",
        "name": "Headphone Bluetooth NC-200",
        "description": "Headphone nirkabel dengan peredam bising aktif dan baterai 30 jam.",
        "price": 450000,
        "discount_price": 360000,
        "stock": 25,
        "sku": "TSA-AUD-0001",
        "weight": 0.4,
        "images": ["https://placehold.co/600x600?text=Headphone"],
    },
    {
        "owner_email": "seller@pasarku.test",
        "category": "elektronik-audio",
        "name": "Speaker Portabel Mini",
        "description": "Speaker tahan air dengan suara bass yang kuat.",
        "price": 275000,
        "stock": 40,
        "sku": "TSA-AUD-0002",
        "weight": 0.6,
        "images": ["https://placehold.co/600x600?text=Speaker"],
    },
    {
        "owner_email": "seller@pasarku.test",
        "category": "elektronik-aksesoris-komputer",
        "name": "Keyboard Mekanikal 87 Tombol",
        "description": "Switch biru, lampu latar RGB, kabel USB-C yang bisa dilepas.",
        "price": 620000,
        "discount_price": 549000,
        "stock": 12,
        "sku": "TSA-KOM-0001",
        "weight": 0.9,
        "images": ["https://placehold.co/600x600?text=Keyboard"],
    },
    {
        "owner_email": "seller@pasarku.test",
        "category": "elektronik-aksesoris-komputer",
        "name": "Mouse Wireless Senyap",
        "description": "Klik tanpa suara dengan sensor 1600 DPI.",
        "price": 125000,
        "stock": 80,
        "sku": "TSA-KOM-0002",
        "weight": 0.1,
        "images": ["https://placehold.co/600x600?text=Mouse"],
    },
    {
        "owner_email": "dapur@pasarku.test",
        "category": "dapur-peralatan-masak",
        "name": "Wajan Anti Lengket 28 cm",
        "description": "Lapisan granit, aman untuk kompor induksi.",
        "price": 235000,
        "discount_price": 199000,
        "stock": 30,
        "sku": "DR-MSK-0001",
        "weight": 1.2,
        "images": ["https://placehold.co/600x600?text=Wajan"],
    },
    {
        "owner_email": "dapur@pasarku.test",
        "category": "dapur-peralatan-masak",
        "name": "Set Pisau Dapur 5 in 1",
        "description": "Pisau baja tahan karat lengkap dengan blok kayu.",
        "price": 310000,
        "stock": 15,
        "sku": "DR-MSK-0002",
        "weight": 1.5,
        "images": ["https://placehold.co/600x600?text=Pisau"],
    },
    {
        "owner_email": "dapur@pasarku.test",
        "category": "dapur",
        "name": "Toples Kaca Kedap Udara",
        "description": "Isi tiga ukuran untuk bumbu dan camilan.",
        "price": 89000,
        "stock": 60,
        "sku": "DR-DPR-0001",
        "weight": 0.8,
        "images": ["https://placehold.co/600x600?text=Toples"],
    },
    {
        "owner_email": "gowes@pasarku.test",
        "category": "olahraga-sepeda",
        "name": "Helm Sepeda Ringan",
        "description": "Ventilasi 18 lubang, bobot 250 gram.",
        "price": 385000,
        "stock": 20,
        "sku": "GB-SPD-0001",
        "weight": 0.3,
        "images": ["https://placehold.co/600x600?text=Helm"],
    },
    {
        "owner_email": "gowes@pasarku.test",
        "category": "olahraga-sepeda",
        "name": "Lampu Sepeda USB",
        "description": "Lampu depan 400 lumen, isi ulang lewat USB.",
        "price": 145000,
        "discount_price": 119000,
        "stock": 45,
        "sku": "GB-SPD-0002",
        "weight": 0.2,
        "images": ["https://placehold.co/600x600?text=Lampu"],
    },
    {
        "owner_email": "gowes@pasarku.test",
        "category": "olahraga",
        "name": "Botol Minum Olahraga 750 ml",
        "description": "Bebas BPA dengan tutup anti tumpah.",
        "price": 65000,
        "stock": 100,
        "sku": "GB-OLR-0001",
        "weight": 0.15,
        "images": ["https://placehold.co/600x600?text=Botol"],
    },
]
