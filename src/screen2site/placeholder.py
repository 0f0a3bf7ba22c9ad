"""Built-in stand-ins used when no model is configured.

The placeholder site's markup carries both ``TEMPLATE_SIGNATURES`` phrases,
which is how ``reject_template_leak`` recognizes it in real output.
"""

from __future__ import annotations

from screen2site.models import ComponentType, DetectedComponent, GeneratedBundle

PLACEHOLDER_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Generated Website</title>
    <link rel="stylesheet" href="styles.css">
</head>
<body>
    <nav class="navbar">
        <div class="nav-container">
            <h1 class="logo">My Website</h1>
            <ul class="nav-menu">
                <li><a href="#home">Home</a></li>
                <li><a href="#about">About</a></li>
                <li><a href="#contact">Contact</a></li>
            </ul>
        </div>
    </nav>

    <main class="container">
        <section class="hero">
            <h2>Welcome to Our Website</h2>
            <p>Transform your ideas into reality</p>
        </section>

        <form class="contact-form" id="contactForm">
            <div class="form-group">
                <label for="email">Email Address</label>
                <input type="email" id="email" name="email" class="input-field" required>
            </div>
            <button type="submit" class="btn-primary">Submit</button>
        </form>
    </main>

    <script src="script.js"></script>
</body>
</html>"""

PLACEHOLDER_CSS = """* {
    margin: 0;
    padding: 0;
    box-sizing: border-box;
}

body {
    font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Oxygen, Ubuntu, Cantarell, sans-serif;
    line-height: 1.6;
    color: #333;
    background: #f5f5f5;
}

.navbar {
    background: #fff;
    box-shadow: 0 2px 4px rgba(0,0,0,0.1);
    padding: 1rem 0;
}

.nav-container {
    max-width: 1200px;
    margin: 0 auto;
    padding: 0 2rem;
    display: flex;
    justify-content: space-between;
    align-items: center;
}

.logo {
    font-size: 1.5rem;
    color: #0ea5e9;
}

.nav-menu {
    display: flex;
    list-style: none;
    gap: 2rem;
}

.nav-menu a {
    text-decoration: none;
    color: #333;
    transition: color 0.3s;
}

.container {
    max-width: 1200px;
    margin: 2rem auto;
    padding: 0 2rem;
}

.hero {
    text-align: center;
    padding: 4rem 0;
    background: white;
    border-radius: 8px;
    margin-bottom: 2rem;
}

.contact-form {
    background: white;
    padding: 2rem;
    border-radius: 8px;
    max-width: 500px;
    margin: 0 auto;
}

.input-field {
    width: 100%;
    padding: 0.75rem;
    border: 1px solid #ddd;
    border-radius: 4px;
}

.btn-primary {
    background: #0ea5e9;
    color: white;
    padding: 0.75rem 2rem;
    border: none;
    border-radius: 4px;
    cursor: pointer;
}

@media (max-width: 768px) {
    .nav-container {
        flex-direction: column;
        gap: 1rem;
    }
}"""

PLACEHOLDER_JS = """document.addEventListener('DOMContentLoaded', function() {
    const form = document.getElementById('contactForm');

    if (form) {
        form.addEventListener('submit', function(e) {
            e.preventDefault();
            const email = document.getElementById('email').value;
            alert('Thank you! Your email ' + email + ' has been received.');
            form.reset();
        });
    }
});"""


def placeholder_bundle() -> GeneratedBundle:
    return GeneratedBundle.from_contents(html=PLACEHOLDER_HTML, css=PLACEHOLDER_CSS, js=PLACEHOLDER_JS)


def placeholder_components() -> list[DetectedComponent]:
    return [
        DetectedComponent(
            id="comp_1",
            type=ComponentType.BUTTON,
            label="Submit Button",
            description="Primary action button for form submission",
            confidence=0.95,
            frame_index=0,
        ),
        DetectedComponent(
            id="comp_2",
            type=ComponentType.INPUT,
            label="Email Input",
            description="Text input field for email address",
            confidence=0.88,
            frame_index=0,
        ),
        DetectedComponent(
            id="comp_3",
            type=ComponentType.NAVIGATION,
            label="Main Navigation",
            description="Top navigation bar with menu items",
            confidence=0.92,
            frame_index=0,
        ),
    ]
